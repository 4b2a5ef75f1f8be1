"""
Board Models

Cards, players, counters and zones as they appear on the shared tabletop.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_LIFE = 40

_MANA_SYMBOL = re.compile(r"\{([^}]+)\}")


class Zone(Enum):
    """Card locations."""

    BATTLEFIELD = "battlefield"
    HAND = "hand"
    LIBRARY = "library"
    CEMETERY = "cemetery"
    EXILE = "exile"
    COMMANDER = "commander"
    TOKENS = "tokens"


# Zones ordered by stack_index (higher = closer to top)
PILE_ZONES = frozenset({Zone.LIBRARY, Zone.CEMETERY, Zone.EXILE, Zone.TOKENS})

# Zones with a per-player anchor position that can be dragged as a unit
ANCHOR_ZONES = frozenset({Zone.LIBRARY, Zone.CEMETERY, Zone.EXILE, Zone.COMMANDER, Zone.TOKENS})


class LibraryPlacement(Enum):
    """Where a card lands when put into a library."""

    TOP = "top"
    BOTTOM = "bottom"
    RANDOM = "random"


class CounterKind(Enum):
    """Counter token flavours."""

    NUMERAL = "numeral"
    PLUS = "plus"  # +X/+Y


@dataclass(frozen=True)
class Point:
    """A position in the logical canvas space."""

    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"x": float(self.x), "y": float(self.y)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Point":
        if not data:
            return cls()
        return cls(x=float(data.get("x", 0.0)), y=float(data.get("y", 0.0)))


@dataclass
class Card:
    """A card on the table, in any zone."""

    id: str
    owner_id: str
    name: str = ""
    zone: Zone = Zone.BATTLEFIELD
    position: Point = field(default_factory=Point)
    tapped: bool = False
    stack_index: int | None = None
    hand_index: int | None = None
    flipped: bool = False
    is_commander: bool = False
    commander_deaths: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cmc(self) -> int:
        """Converted mana cost, from metadata or parsed from the mana cost string."""
        if "cmc" in self.metadata:
            return int(self.metadata["cmc"])
        total = 0
        for symbol in _MANA_SYMBOL.findall(self.metadata.get("mana_cost", "") or ""):
            if symbol.isdigit():
                total += int(symbol)
            elif symbol.upper() in ("X", "Y", "Z"):
                continue
            else:
                total += 1
        return total

    @property
    def is_land(self) -> bool:
        return "land" in (self.metadata.get("type_line", "") or "").lower()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "zone": self.zone.value,
            "position": self.position.to_dict(),
            "tapped": self.tapped,
            "stack_index": self.stack_index,
            "hand_index": self.hand_index,
            "flipped": self.flipped,
            "is_commander": self.is_commander,
            "commander_deaths": self.commander_deaths,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Card":
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            name=data.get("name", ""),
            zone=Zone(data.get("zone", Zone.BATTLEFIELD.value)),
            position=Point.from_dict(data.get("position")),
            tapped=data.get("tapped", False),
            stack_index=data.get("stack_index"),
            hand_index=data.get("hand_index"),
            flipped=data.get("flipped", False),
            is_commander=data.get("is_commander", False),
            commander_deaths=data.get("commander_deaths", 0),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Player:
    """A seat at the table."""

    id: str
    name: str
    life: int = DEFAULT_LIFE
    commander_damage: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "life": self.life,
            "commander_damage": dict(self.commander_damage),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Player":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            life=data.get("life", DEFAULT_LIFE),
            commander_damage=dict(data.get("commander_damage") or {}),
        )


@dataclass
class Counter:
    """A free-standing counter token."""

    id: str
    owner_id: str
    kind: CounterKind = CounterKind.NUMERAL
    position: Point = field(default_factory=Point)
    value: int = 0
    plus_x: int = 0
    plus_y: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "position": self.position.to_dict(),
            "value": self.value,
            "plus_x": self.plus_x,
            "plus_y": self.plus_y,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Counter":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            kind=CounterKind(data.get("kind", CounterKind.NUMERAL.value)),
            position=Point.from_dict(data.get("position")),
            value=data.get("value", 0),
            plus_x=data.get("plus_x", 0),
            plus_y=data.get("plus_y", 0),
        )
