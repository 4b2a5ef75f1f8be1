"""
Board Actions

Every change to a board is expressed as an Action: a closed set of kinds,
each with a typed payload. Actions are the only thing replicas exchange
besides full snapshots.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar

from boardsync.board.models import (
    Card,
    Counter,
    LibraryPlacement,
    Player,
    Point,
    Zone,
)
from boardsync.errors import ProtocolError


class ActionKind(Enum):
    """Kinds of board mutation."""

    ADD_CARD = "ADD_CARD"
    MOVE_CARD = "MOVE_CARD"
    CHANGE_ZONE = "CHANGE_ZONE"
    TOGGLE_TAP = "TOGGLE_TAP"
    FLIP_CARD = "FLIP_CARD"
    REMOVE_CARD = "REMOVE_CARD"
    SET_COMMANDER = "SET_COMMANDER"
    MOVE_ANCHOR = "MOVE_ANCHOR"
    CREATE_COUNTER = "CREATE_COUNTER"
    MOVE_COUNTER = "MOVE_COUNTER"
    MODIFY_COUNTER = "MODIFY_COUNTER"
    REMOVE_COUNTER = "REMOVE_COUNTER"
    SET_LIFE = "SET_LIFE"
    SET_COMMANDER_DAMAGE = "SET_COMMANDER_DAMAGE"
    ADJUST_COMMANDER_DAMAGE = "ADJUST_COMMANDER_DAMAGE"
    REORDER_HAND = "REORDER_HAND"
    REORDER_LIBRARY = "REORDER_LIBRARY"
    DRAW_CARD = "DRAW_CARD"
    SHUFFLE_LIBRARY = "SHUFFLE_LIBRARY"
    MULLIGAN = "MULLIGAN"
    REPLACE_LIBRARY = "REPLACE_LIBRARY"
    CASCADE = "CASCADE"
    PLAYER_JOINED = "PLAYER_JOINED"
    PLAYER_LEFT = "PLAYER_LEFT"


# Only the host may originate these
HOST_ONLY_KINDS = frozenset({ActionKind.PLAYER_JOINED, ActionKind.PLAYER_LEFT})


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (Point, Card, Player, Counter)):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _zone_or_none(value: str | None) -> Zone | None:
    return Zone(value) if value is not None else None


@dataclass(frozen=True)
class Payload:
    """Base class for action payloads."""

    kind: ClassVar[ActionKind]

    @property
    def target_id(self) -> str | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Payload":
        raise NotImplementedError


@dataclass(frozen=True)
class CardPayload(Payload):
    """Payload addressing a single card by id."""

    card_id: str

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CardPayload":
        return cls(card_id=data["card_id"])


@dataclass(frozen=True)
class AddCard(Payload):
    kind = ActionKind.ADD_CARD
    card: Card

    @property
    def target_id(self) -> str:
        return self.card.id

    @classmethod
    def from_dict(cls, data):
        return cls(card=Card.from_dict(data["card"]))


@dataclass(frozen=True)
class MoveCard(Payload):
    """Reposition a card. ``zone`` is the zone the card is expected to be in."""

    kind = ActionKind.MOVE_CARD
    card_id: str
    position: Point
    zone: Zone | None = None

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            card_id=data["card_id"],
            position=Point.from_dict(data.get("position")),
            zone=_zone_or_none(data.get("zone")),
        )


@dataclass(frozen=True)
class ChangeZone(Payload):
    """Move a card to another zone.

    ``stack_index`` is only set when the placement was resolved to a concrete
    index ahead of time (random library placement).
    """

    kind = ActionKind.CHANGE_ZONE
    card_id: str
    zone: Zone
    position: Point
    placement: LibraryPlacement | None = None
    stack_index: int | None = None

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data):
        placement = data.get("placement")
        return cls(
            card_id=data["card_id"],
            zone=Zone(data["zone"]),
            position=Point.from_dict(data.get("position")),
            placement=LibraryPlacement(placement) if placement else None,
            stack_index=data.get("stack_index"),
        )


@dataclass(frozen=True)
class ToggleTap(CardPayload):
    kind = ActionKind.TOGGLE_TAP


@dataclass(frozen=True)
class FlipCard(CardPayload):
    kind = ActionKind.FLIP_CARD


@dataclass(frozen=True)
class RemoveCard(CardPayload):
    kind = ActionKind.REMOVE_CARD


@dataclass(frozen=True)
class SetCommander(Payload):
    kind = ActionKind.SET_COMMANDER
    card_id: str
    position: Point

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data):
        return cls(card_id=data["card_id"], position=Point.from_dict(data.get("position")))


@dataclass(frozen=True)
class MoveAnchor(Payload):
    kind = ActionKind.MOVE_ANCHOR
    zone: Zone
    player_name: str
    position: Point

    @property
    def target_id(self) -> str:
        return f"anchor:{self.zone.value}:{self.player_name}"

    @classmethod
    def from_dict(cls, data):
        return cls(
            zone=Zone(data["zone"]),
            player_name=data["player_name"],
            position=Point.from_dict(data.get("position")),
        )


@dataclass(frozen=True)
class CreateCounter(Payload):
    kind = ActionKind.CREATE_COUNTER
    counter: Counter

    @property
    def target_id(self) -> str:
        return self.counter.id

    @classmethod
    def from_dict(cls, data):
        return cls(counter=Counter.from_dict(data["counter"]))


@dataclass(frozen=True)
class MoveCounter(Payload):
    kind = ActionKind.MOVE_COUNTER
    counter_id: str
    position: Point

    @property
    def target_id(self) -> str:
        return self.counter_id

    @classmethod
    def from_dict(cls, data):
        return cls(counter_id=data["counter_id"], position=Point.from_dict(data.get("position")))


@dataclass(frozen=True)
class ModifyCounter(Payload):
    """Change a counter's values. ``set_*`` wins over ``delta*`` when both are given."""

    kind = ActionKind.MODIFY_COUNTER
    counter_id: str
    delta: int = 0
    set_value: int | None = None
    delta_x: int = 0
    delta_y: int = 0
    set_x: int | None = None
    set_y: int | None = None

    @property
    def target_id(self) -> str:
        return self.counter_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            counter_id=data["counter_id"],
            delta=data.get("delta", 0),
            set_value=data.get("set_value"),
            delta_x=data.get("delta_x", 0),
            delta_y=data.get("delta_y", 0),
            set_x=data.get("set_x"),
            set_y=data.get("set_y"),
        )


@dataclass(frozen=True)
class RemoveCounter(Payload):
    kind = ActionKind.REMOVE_COUNTER
    counter_id: str

    @property
    def target_id(self) -> str:
        return self.counter_id

    @classmethod
    def from_dict(cls, data):
        return cls(counter_id=data["counter_id"])


@dataclass(frozen=True)
class SetLife(Payload):
    kind = ActionKind.SET_LIFE
    player_id: str
    life: int

    @property
    def target_id(self) -> str:
        return self.player_id

    @classmethod
    def from_dict(cls, data):
        return cls(player_id=data["player_id"], life=int(data["life"]))


@dataclass(frozen=True)
class SetCommanderDamage(Payload):
    kind = ActionKind.SET_COMMANDER_DAMAGE
    target_player_id: str
    attacker_player_id: str
    damage: int

    @property
    def target_id(self) -> str:
        return self.target_player_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            target_player_id=data["target_player_id"],
            attacker_player_id=data["attacker_player_id"],
            damage=int(data["damage"]),
        )


@dataclass(frozen=True)
class AdjustCommanderDamage(Payload):
    kind = ActionKind.ADJUST_COMMANDER_DAMAGE
    target_player_id: str
    attacker_player_id: str
    delta: int

    @property
    def target_id(self) -> str:
        return self.target_player_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            target_player_id=data["target_player_id"],
            attacker_player_id=data["attacker_player_id"],
            delta=int(data["delta"]),
        )


@dataclass(frozen=True)
class ReorderHand(Payload):
    kind = ActionKind.REORDER_HAND
    player_id: str
    card_id: str
    new_index: int

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            player_id=data["player_id"],
            card_id=data["card_id"],
            new_index=int(data["new_index"]),
        )


@dataclass(frozen=True)
class ReorderLibrary(ReorderHand):
    """Move a library card to ``new_index`` counted from the top."""

    kind = ActionKind.REORDER_LIBRARY


@dataclass(frozen=True)
class DrawCard(Payload):
    kind = ActionKind.DRAW_CARD
    player_id: str
    card_id: str

    @property
    def target_id(self) -> str:
        return self.card_id

    @classmethod
    def from_dict(cls, data):
        return cls(player_id=data["player_id"], card_id=data["card_id"])


@dataclass(frozen=True)
class ShuffleLibrary(Payload):
    """Library order resolved ahead of time, listed top to bottom."""

    kind = ActionKind.SHUFFLE_LIBRARY
    player_id: str
    order: tuple[str, ...]

    @property
    def target_id(self) -> str:
        return self.player_id

    @classmethod
    def from_dict(cls, data):
        return cls(player_id=data["player_id"], order=tuple(data.get("order") or ()))


@dataclass(frozen=True)
class Mulligan(ShuffleLibrary):
    kind = ActionKind.MULLIGAN


@dataclass(frozen=True)
class ReplaceLibrary(Payload):
    kind = ActionKind.REPLACE_LIBRARY
    player_id: str
    cards: tuple[Card, ...]

    @property
    def target_id(self) -> str:
        return self.player_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            player_id=data["player_id"],
            cards=tuple(Card.from_dict(c) for c in data.get("cards") or ()),
        )


@dataclass(frozen=True)
class Cascade(Payload):
    """Result of a cascade reveal.

    ``hit_card_id`` goes to the battlefield at ``position``; every card in
    ``bottom_order`` goes to the bottom of the library in that order.
    """

    kind = ActionKind.CASCADE
    player_id: str
    hit_card_id: str | None
    bottom_order: tuple[str, ...]
    position: Point

    @property
    def target_id(self) -> str:
        return self.player_id

    @classmethod
    def from_dict(cls, data):
        return cls(
            player_id=data["player_id"],
            hit_card_id=data.get("hit_card_id"),
            bottom_order=tuple(data.get("bottom_order") or ()),
            position=Point.from_dict(data.get("position")),
        )


@dataclass(frozen=True)
class PlayerJoined(Payload):
    kind = ActionKind.PLAYER_JOINED
    player: Player

    @property
    def target_id(self) -> str:
        return self.player.id

    @classmethod
    def from_dict(cls, data):
        return cls(player=Player.from_dict(data["player"]))


@dataclass(frozen=True)
class PlayerLeft(Payload):
    kind = ActionKind.PLAYER_LEFT
    player_id: str

    @property
    def target_id(self) -> str:
        return self.player_id

    @classmethod
    def from_dict(cls, data):
        return cls(player_id=data["player_id"])


PAYLOAD_TYPES: dict[ActionKind, type[Payload]] = {
    cls.kind: cls
    for cls in (
        AddCard,
        MoveCard,
        ChangeZone,
        ToggleTap,
        FlipCard,
        RemoveCard,
        SetCommander,
        MoveAnchor,
        CreateCounter,
        MoveCounter,
        ModifyCounter,
        RemoveCounter,
        SetLife,
        SetCommanderDamage,
        AdjustCommanderDamage,
        ReorderHand,
        ReorderLibrary,
        DrawCard,
        ShuffleLibrary,
        Mulligan,
        ReplaceLibrary,
        Cascade,
        PlayerJoined,
        PlayerLeft,
    )
}


@dataclass
class Action:
    """A single board mutation, as applied and as sent over the wire.

    ``persist`` separates durable actions (must eventually reach every
    replica) from ephemeral ones (only the newest per target matters).
    ``seq`` is assigned by the originating replica and increases per actor.
    """

    actor_id: str
    payload: Payload
    persist: bool = True
    seq: int = 0

    @property
    def kind(self) -> ActionKind:
        return self.payload.kind

    @property
    def target_id(self) -> str | None:
        return self.payload.target_id

    @property
    def is_host_only(self) -> bool:
        return self.kind in HOST_ONLY_KINDS

    def to_wire(self) -> dict[str, Any]:
        """Convert to the BOARD_ACTION body."""
        return {
            "actionKind": self.kind.value,
            "actorId": self.actor_id,
            "targetId": self.target_id,
            "data": self.payload.to_dict(),
            "persist": self.persist,
            "seq": self.seq,
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "Action":
        """Parse a BOARD_ACTION body, raising ProtocolError if it is malformed."""
        try:
            kind = ActionKind(data["actionKind"])
            payload = PAYLOAD_TYPES[kind].from_dict(data.get("data") or {})
            return cls(
                actor_id=data["actorId"],
                payload=payload,
                persist=bool(data.get("persist", True)),
                seq=int(data.get("seq", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed action: {e}") from e

