"""boardsync - Real-time shared tabletop for card games."""

__version__ = "0.1.0"

from boardsync.board import Action, ActionKind, BoardStore, Card, Counter, Player, Point, Zone
from boardsync.config import BoardSyncConfig
from boardsync.errors import (
    AuthError,
    BoardSyncError,
    OwnershipViolation,
    ProtocolError,
    StaleReferenceError,
    TransportError,
)
from boardsync.sync import ReplicationEngine, SessionManager, SessionStatus

__all__ = [
    "Action",
    "ActionKind",
    "AuthError",
    "BoardStore",
    "BoardSyncConfig",
    "BoardSyncError",
    "Card",
    "Counter",
    "OwnershipViolation",
    "Player",
    "Point",
    "ProtocolError",
    "ReplicationEngine",
    "SessionManager",
    "SessionStatus",
    "StaleReferenceError",
    "TransportError",
    "Zone",
    "__version__",
]
