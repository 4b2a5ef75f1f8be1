"""
Board State

In-memory tabletop model and the deterministic store that every replica
mutates through Actions.
"""

from boardsync.board.actions import Action, ActionKind
from boardsync.board.models import (
    Card,
    Counter,
    CounterKind,
    LibraryPlacement,
    Player,
    Point,
    Zone,
)
from boardsync.board.store import BoardStore

__all__ = [
    "Action",
    "ActionKind",
    "BoardStore",
    "Card",
    "Counter",
    "CounterKind",
    "LibraryPlacement",
    "Player",
    "Point",
    "Zone",
]
