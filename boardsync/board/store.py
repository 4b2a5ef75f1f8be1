"""
Board State Store

Holds one replica of the board. Every mutation goes through two steps:
``resolve_*`` validates against the current state and fixes every value that
must not be recomputed elsewhere (new ids, random picks, resolved totals)
into an action payload; ``apply`` then mutates the board deterministically,
so equal stores fed the same ordered actions stay equal.
"""

import copy
import hashlib
import json
import random
from typing import Any

from boardsync.board.actions import (
    Action,
    AddCard,
    AdjustCommanderDamage,
    Cascade,
    ChangeZone,
    CreateCounter,
    DrawCard,
    FlipCard,
    ModifyCounter,
    MoveAnchor,
    MoveCard,
    MoveCounter,
    Mulligan,
    PlayerJoined,
    PlayerLeft,
    RemoveCard,
    RemoveCounter,
    ReorderHand,
    ReorderLibrary,
    ReplaceLibrary,
    SetCommander,
    SetCommanderDamage,
    SetLife,
    ShuffleLibrary,
    ToggleTap,
)
from boardsync.board.models import (
    ANCHOR_ZONES,
    DEFAULT_LIFE,
    PILE_ZONES,
    Card,
    Counter,
    CounterKind,
    LibraryPlacement,
    Player,
    Point,
    Zone,
)
from boardsync.errors import StaleReferenceError
from boardsync.identity import new_entity_id


def _pile_key(card: Card) -> tuple[int, str]:
    return (card.stack_index if card.stack_index is not None else 0, card.id)


class BoardStore:
    """One replica of the shared board."""

    def __init__(self, rng: random.Random | None = None):
        self.cards: dict[str, Card] = {}
        self.players: dict[str, Player] = {}
        self.counters: dict[str, Counter] = {}
        self.anchors: dict[Zone, dict[str, Point]] = {}
        self._rng = rng or random.Random()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_card(self, card_id: str) -> Card | None:
        return self.cards.get(card_id)

    def get_player(self, player_id: str) -> Player | None:
        return self.players.get(player_id)

    def player_by_name(self, name: str) -> Player | None:
        for player in self.players.values():
            if player.name == name:
                return player
        return None

    def cards_in(self, owner_id: str, zone: Zone) -> list[Card]:
        return [c for c in self.cards.values() if c.owner_id == owner_id and c.zone == zone]

    def pile(self, owner_id: str, zone: Zone) -> list[Card]:
        """Cards of a pile zone, top first."""
        return sorted(self.cards_in(owner_id, zone), key=_pile_key, reverse=True)

    def library(self, owner_id: str) -> list[Card]:
        return self.pile(owner_id, Zone.LIBRARY)

    def hand(self, owner_id: str) -> list[Card]:
        """Hand cards in hand order."""
        return sorted(
            self.cards_in(owner_id, Zone.HAND),
            key=lambda c: (c.hand_index if c.hand_index is not None else len(self.cards), c.id),
        )

    def anchor(self, zone: Zone, player_name: str) -> Point | None:
        return self.anchors.get(zone, {}).get(player_name)

    def _require_card(self, card_id: str) -> Card:
        card = self.cards.get(card_id)
        if card is None:
            raise StaleReferenceError(f"Unknown card: {card_id}", target_id=card_id)
        return card

    def _require_player(self, player_id: str) -> Player:
        player = self.players.get(player_id)
        if player is None:
            raise StaleReferenceError(f"Unknown player: {player_id}", target_id=player_id)
        return player

    def _require_counter(self, counter_id: str) -> Counter:
        counter = self.counters.get(counter_id)
        if counter is None:
            raise StaleReferenceError(f"Unknown counter: {counter_id}", target_id=counter_id)
        return counter

    def _stack_indices(self, owner_id: str, zone: Zone, exclude: str | None) -> list[int]:
        return [
            c.stack_index if c.stack_index is not None else 0
            for c in self.cards_in(owner_id, zone)
            if c.id != exclude
        ]

    def _top_index(self, owner_id: str, zone: Zone, exclude: str | None = None) -> int:
        indices = self._stack_indices(owner_id, zone, exclude)
        return max(indices) + 1 if indices else 0

    def _bottom_index(self, owner_id: str, zone: Zone, exclude: str | None = None) -> int:
        indices = self._stack_indices(owner_id, zone, exclude)
        return min(indices) - 1 if indices else 0

    def _pile_position(self, owner_id: str, zone: Zone, fallback: Point) -> Point:
        player = self.players.get(owner_id)
        if player is not None:
            anchor = self.anchor(zone, player.name)
            if anchor is not None:
                return anchor
        return fallback

    # =========================================================================
    # Resolve
    # =========================================================================

    def resolve_add_card(
        self,
        owner_id: str,
        name: str,
        zone: Zone = Zone.BATTLEFIELD,
        position: Point | None = None,
        metadata: dict[str, Any] | None = None,
        is_commander: bool = False,
    ) -> AddCard:
        """New card with a fresh id. Pile zones put it on top."""
        card = Card(
            id=new_entity_id(),
            owner_id=owner_id,
            name=name,
            zone=zone,
            position=position or self._pile_position(owner_id, zone, Point()),
            metadata=dict(metadata or {}),
            is_commander=is_commander,
        )
        return AddCard(card=card)

    def resolve_move_card(self, card_id: str, position: Point) -> MoveCard | None:
        card = self.cards.get(card_id)
        if card is None:
            return None
        return MoveCard(card_id=card_id, position=position, zone=card.zone)

    def resolve_change_zone(
        self,
        card_id: str,
        zone: Zone,
        position: Point | None = None,
        placement: LibraryPlacement | None = None,
    ) -> ChangeZone | None:
        card = self.cards.get(card_id)
        if card is None:
            return None
        if position is None:
            position = self._pile_position(card.owner_id, zone, card.position)
        stack_index = None
        if zone == Zone.LIBRARY:
            placement = placement or LibraryPlacement.TOP
            if placement == LibraryPlacement.RANDOM:
                indices = self._stack_indices(card.owner_id, Zone.LIBRARY, exclude=card.id)
                stack_index = self._rng.randint(min(indices), max(indices)) if indices else 0
        else:
            placement = None
        return ChangeZone(
            card_id=card_id,
            zone=zone,
            position=position,
            placement=placement,
            stack_index=stack_index,
        )

    def resolve_toggle_tap(self, card_id: str) -> ToggleTap | None:
        return ToggleTap(card_id=card_id) if card_id in self.cards else None

    def resolve_flip_card(self, card_id: str) -> FlipCard | None:
        return FlipCard(card_id=card_id) if card_id in self.cards else None

    def resolve_remove_card(self, card_id: str) -> RemoveCard | None:
        return RemoveCard(card_id=card_id) if card_id in self.cards else None

    def resolve_set_commander(self, card_id: str, position: Point | None = None) -> SetCommander | None:
        card = self.cards.get(card_id)
        if card is None:
            return None
        if position is None:
            position = self._pile_position(card.owner_id, Zone.COMMANDER, card.position)
        return SetCommander(card_id=card_id, position=position)

    def resolve_send_commander(self, card_id: str) -> ChangeZone | None:
        """Return a commander to the command zone. Counts a death on apply."""
        card = self.cards.get(card_id)
        if card is None or not card.is_commander or card.zone == Zone.COMMANDER:
            return None
        return self.resolve_change_zone(card_id, Zone.COMMANDER)

    def resolve_move_anchor(self, zone: Zone, player_name: str, position: Point) -> MoveAnchor | None:
        if zone not in ANCHOR_ZONES:
            return None
        return MoveAnchor(zone=zone, player_name=player_name, position=position)

    def resolve_create_counter(
        self, owner_id: str, kind: CounterKind = CounterKind.NUMERAL, position: Point | None = None
    ) -> CreateCounter:
        return CreateCounter(
            counter=Counter(id=new_entity_id(), owner_id=owner_id, kind=kind, position=position or Point())
        )

    def resolve_move_counter(self, counter_id: str, position: Point) -> MoveCounter | None:
        if counter_id not in self.counters:
            return None
        return MoveCounter(counter_id=counter_id, position=position)

    def resolve_modify_counter(self, counter_id: str, **changes: int | None) -> ModifyCounter | None:
        if counter_id not in self.counters:
            return None
        return ModifyCounter(counter_id=counter_id, **changes)

    def resolve_remove_counter(self, counter_id: str) -> RemoveCounter | None:
        return RemoveCounter(counter_id=counter_id) if counter_id in self.counters else None

    def resolve_set_life(self, player_id: str, life: int) -> SetLife | None:
        if player_id not in self.players:
            return None
        return SetLife(player_id=player_id, life=life)

    def resolve_change_life(self, player_id: str, delta: int) -> SetLife | None:
        """Resolve a relative life change to an absolute total, floored at 0."""
        player = self.players.get(player_id)
        if player is None:
            return None
        return SetLife(player_id=player_id, life=max(0, player.life + delta))

    def resolve_set_commander_damage(
        self, target_player_id: str, attacker_player_id: str, damage: int
    ) -> SetCommanderDamage | None:
        if target_player_id not in self.players:
            return None
        return SetCommanderDamage(
            target_player_id=target_player_id,
            attacker_player_id=attacker_player_id,
            damage=max(0, damage),
        )

    def resolve_adjust_commander_damage(
        self, target_player_id: str, attacker_player_id: str, delta: int
    ) -> AdjustCommanderDamage | None:
        if target_player_id not in self.players or delta == 0:
            return None
        return AdjustCommanderDamage(
            target_player_id=target_player_id,
            attacker_player_id=attacker_player_id,
            delta=delta,
        )

    def resolve_reorder_hand(self, player_id: str, card_id: str, new_index: int) -> ReorderHand | None:
        card = self.cards.get(card_id)
        if card is None or card.owner_id != player_id or card.zone != Zone.HAND:
            return None
        return ReorderHand(player_id=player_id, card_id=card_id, new_index=new_index)

    def resolve_reorder_library(self, player_id: str, card_id: str, new_index: int) -> ReorderLibrary | None:
        card = self.cards.get(card_id)
        if card is None or card.owner_id != player_id or card.zone != Zone.LIBRARY:
            return None
        return ReorderLibrary(player_id=player_id, card_id=card_id, new_index=new_index)

    def resolve_draw(self, player_id: str) -> DrawCard | None:
        """Pick the top card of the library. None when the library is empty."""
        library = self.library(player_id)
        if not library:
            return None
        return DrawCard(player_id=player_id, card_id=library[0].id)

    def resolve_shuffle(self, player_id: str) -> ShuffleLibrary | None:
        order = [c.id for c in self.library(player_id)]
        if not order:
            return None
        self._rng.shuffle(order)
        return ShuffleLibrary(player_id=player_id, order=tuple(order))

    def resolve_mulligan(self, player_id: str) -> Mulligan | None:
        """Hand goes back into the library, then the library is shuffled."""
        hand = self.hand(player_id)
        if not hand:
            return None
        order = [c.id for c in hand] + [c.id for c in self.library(player_id)]
        self._rng.shuffle(order)
        return Mulligan(player_id=player_id, order=tuple(order))

    def resolve_replace_library(self, player_id: str, entries: list[dict[str, Any]]) -> ReplaceLibrary:
        """Build a fresh library from ``entries`` (``name`` and ``metadata``), listed top first."""
        position = self._pile_position(player_id, Zone.LIBRARY, Point())
        count = len(entries)
        cards = tuple(
            Card(
                id=new_entity_id(),
                owner_id=player_id,
                name=entry.get("name", ""),
                zone=Zone.LIBRARY,
                position=position,
                stack_index=count - 1 - i,
                metadata=dict(entry.get("metadata") or {}),
            )
            for i, entry in enumerate(entries)
        )
        return ReplaceLibrary(player_id=player_id, cards=cards)

    def resolve_cascade(self, player_id: str, max_cmc: int, position: Point | None = None) -> Cascade | None:
        """Reveal from the top until a nonland card with cmc <= ``max_cmc``.

        Revealed misses (or the whole library when nothing hits) go to the
        bottom in a random order.
        """
        library = self.library(player_id)
        if not library:
            return None
        hit = None
        misses = []
        for card in library:
            if not card.is_land and card.cmc <= max_cmc:
                hit = card
                break
            misses.append(card.id)
        self._rng.shuffle(misses)
        return Cascade(
            player_id=player_id,
            hit_card_id=hit.id if hit else None,
            bottom_order=tuple(misses),
            position=position or Point(),
        )

    def resolve_player_joined(
        self,
        player_id: str,
        name: str,
        life: int = DEFAULT_LIFE,
        commander_damage: dict[str, int] | None = None,
    ) -> PlayerJoined:
        return PlayerJoined(
            player=Player(id=player_id, name=name, life=life, commander_damage=dict(commander_damage or {}))
        )

    def resolve_player_left(self, player_id: str) -> PlayerLeft | None:
        return PlayerLeft(player_id=player_id) if player_id in self.players else None

    # =========================================================================
    # Apply
    # =========================================================================

    def apply(self, action: Action) -> None:
        """Apply one action. Raises StaleReferenceError when its target is gone."""
        # Subclasses come before their bases (ReorderLibrary, Mulligan)
        match action.payload:
            case AddCard(card=card):
                self._add_card(card)
            case MoveCard(card_id=card_id, position=position, zone=zone):
                self._move_card(card_id, position, zone)
            case ChangeZone() as payload:
                self._change_zone(payload)
            case ToggleTap(card_id=card_id):
                card = self._require_card(card_id)
                card.tapped = not card.tapped
            case FlipCard(card_id=card_id):
                card = self._require_card(card_id)
                card.flipped = not card.flipped
            case RemoveCard(card_id=card_id):
                self._remove_card(card_id)
            case SetCommander(card_id=card_id, position=position):
                self._set_commander(card_id, position)
            case MoveAnchor(zone=zone, player_name=player_name, position=position):
                self.anchors.setdefault(zone, {})[player_name] = position
            case CreateCounter(counter=counter):
                self.counters[counter.id] = copy.deepcopy(counter)
            case MoveCounter(counter_id=counter_id, position=position):
                self._require_counter(counter_id).position = position
            case ModifyCounter() as payload:
                self._modify_counter(payload)
            case RemoveCounter(counter_id=counter_id):
                self._require_counter(counter_id)
                del self.counters[counter_id]
            case SetLife(player_id=player_id, life=life):
                self._require_player(player_id).life = life
            case SetCommanderDamage(target_player_id=target, attacker_player_id=attacker, damage=damage):
                self._require_player(target).commander_damage[attacker] = damage
            case AdjustCommanderDamage(target_player_id=target, attacker_player_id=attacker, delta=delta):
                self._adjust_commander_damage(target, attacker, delta)
            case ReorderLibrary(player_id=player_id, card_id=card_id, new_index=new_index):
                self._reorder_library(player_id, card_id, new_index)
            case ReorderHand(player_id=player_id, card_id=card_id, new_index=new_index):
                self._reorder_hand(player_id, card_id, new_index)
            case DrawCard(player_id=player_id, card_id=card_id):
                self._draw(player_id, card_id)
            case Mulligan(player_id=player_id, order=order):
                self._mulligan(player_id, order)
            case ShuffleLibrary(player_id=player_id, order=order):
                self._shuffle(player_id, order)
            case ReplaceLibrary(player_id=player_id, cards=cards):
                self._replace_library(player_id, cards)
            case Cascade() as payload:
                self._cascade(payload)
            case PlayerJoined(player=player):
                self.players[player.id] = copy.deepcopy(player)
            case PlayerLeft(player_id=player_id):
                self._require_player(player_id)
                del self.players[player_id]
            case _:
                raise TypeError(f"Unhandled action payload: {type(action.payload).__name__}")

    def _renumber_hand(self, owner_id: str) -> None:
        for i, card in enumerate(self.hand(owner_id)):
            card.hand_index = i

    def _add_card(self, card: Card) -> None:
        card = copy.deepcopy(card)
        if card.zone in PILE_ZONES and card.stack_index is None:
            card.stack_index = self._top_index(card.owner_id, card.zone, exclude=card.id)
        if card.zone == Zone.HAND and card.hand_index is None:
            card.hand_index = len(self.cards_in(card.owner_id, Zone.HAND))
        self.cards[card.id] = card
        if card.zone == Zone.HAND:
            self._renumber_hand(card.owner_id)

    def _move_card(self, card_id: str, position: Point, zone: Zone | None) -> None:
        card = self._require_card(card_id)
        if zone is not None and card.zone != zone:
            raise StaleReferenceError(f"Card {card_id} left {zone.value}", target_id=card_id)
        card.position = position

    def _change_zone(self, payload: ChangeZone) -> None:
        card = self._require_card(payload.card_id)
        old_zone = card.zone
        zone = payload.zone

        if zone == Zone.LIBRARY:
            if payload.stack_index is not None:
                card.stack_index = payload.stack_index
            elif payload.placement == LibraryPlacement.BOTTOM:
                card.stack_index = self._bottom_index(card.owner_id, zone, exclude=card.id)
            else:
                card.stack_index = self._top_index(card.owner_id, zone, exclude=card.id)
        elif zone in PILE_ZONES:
            card.stack_index = self._top_index(card.owner_id, zone, exclude=card.id)
        else:
            card.stack_index = None

        if zone == Zone.HAND:
            if old_zone != Zone.HAND:
                others = [c.hand_index or 0 for c in self.cards_in(card.owner_id, Zone.HAND)]
                card.hand_index = max(others) + 1 if others else 0
        else:
            card.hand_index = None

        if zone == Zone.COMMANDER and card.is_commander and old_zone != Zone.COMMANDER:
            card.commander_deaths += 1
        if zone != Zone.BATTLEFIELD:
            card.tapped = False

        card.zone = zone
        card.position = payload.position
        if Zone.HAND in (old_zone, zone):
            self._renumber_hand(card.owner_id)

    def _remove_card(self, card_id: str) -> None:
        card = self._require_card(card_id)
        del self.cards[card_id]
        if card.zone == Zone.HAND:
            self._renumber_hand(card.owner_id)

    def _set_commander(self, card_id: str, position: Point) -> None:
        card = self._require_card(card_id)
        old_zone = card.zone
        card.is_commander = True
        card.commander_deaths = 0
        card.zone = Zone.COMMANDER
        card.position = position
        card.stack_index = None
        card.hand_index = None
        card.tapped = False
        if old_zone == Zone.HAND:
            self._renumber_hand(card.owner_id)

    def _modify_counter(self, payload: ModifyCounter) -> None:
        counter = self._require_counter(payload.counter_id)
        if counter.kind == CounterKind.NUMERAL:
            value = payload.set_value if payload.set_value is not None else counter.value + payload.delta
            counter.value = max(0, value)
        else:
            counter.plus_x = payload.set_x if payload.set_x is not None else counter.plus_x + payload.delta_x
            counter.plus_y = payload.set_y if payload.set_y is not None else counter.plus_y + payload.delta_y

    def _adjust_commander_damage(self, target_id: str, attacker_id: str, delta: int) -> None:
        target = self._require_player(target_id)
        current = target.commander_damage.get(attacker_id, 0)
        target.commander_damage[attacker_id] = max(0, current + delta)
        target.life = max(0, target.life - delta)

    def _reorder_hand(self, player_id: str, card_id: str, new_index: int) -> None:
        hand = self.hand(player_id)
        card = self._require_card(card_id)
        if card not in hand:
            raise StaleReferenceError(f"Card {card_id} is not in hand", target_id=card_id)
        hand.remove(card)
        hand.insert(max(0, min(new_index, len(hand))), card)
        for i, c in enumerate(hand):
            c.hand_index = i

    def _reorder_library(self, player_id: str, card_id: str, new_index: int) -> None:
        library = self.library(player_id)
        card = self._require_card(card_id)
        if card not in library:
            raise StaleReferenceError(f"Card {card_id} is not in library", target_id=card_id)
        library.remove(card)
        library.insert(max(0, min(new_index, len(library))), card)
        self._restack(library)

    @staticmethod
    def _restack(pile_top_first: list[Card]) -> None:
        count = len(pile_top_first)
        for i, card in enumerate(pile_top_first):
            card.stack_index = count - 1 - i

    def _draw(self, player_id: str, card_id: str) -> None:
        card = self._require_card(card_id)
        if card.owner_id != player_id or card.zone != Zone.LIBRARY:
            raise StaleReferenceError(f"Card {card_id} is not in the library", target_id=card_id)
        self._change_zone(ChangeZone(card_id=card_id, zone=Zone.HAND, position=Point()))

    def _shuffle(self, player_id: str, order: tuple[str, ...]) -> None:
        library = self.library(player_id)
        remaining = {c.id: c for c in library}
        ordered = [remaining.pop(cid) for cid in order if cid in remaining]
        # Cards that reached the library after the order was resolved stay below it
        ordered.extend(c for c in library if c.id in remaining)
        self._restack(ordered)

    def _mulligan(self, player_id: str, order: tuple[str, ...]) -> None:
        position = self._pile_position(player_id, Zone.LIBRARY, Point())
        for card in self.hand(player_id):
            card.zone = Zone.LIBRARY
            card.hand_index = None
            card.position = position
        self._shuffle(player_id, order)

    def _replace_library(self, player_id: str, cards: tuple[Card, ...]) -> None:
        for card in self.cards_in(player_id, Zone.LIBRARY):
            del self.cards[card.id]
        for card in cards:
            card = copy.deepcopy(card)
            card.zone = Zone.LIBRARY
            self.cards[card.id] = card

    def _cascade(self, payload: Cascade) -> None:
        if payload.hit_card_id is not None:
            hit = self._require_card(payload.hit_card_id)
            if hit.owner_id != payload.player_id or hit.zone != Zone.LIBRARY:
                raise StaleReferenceError("Cascade hit left the library", target_id=hit.id)
            self._change_zone(ChangeZone(card_id=hit.id, zone=Zone.BATTLEFIELD, position=payload.position))
        for card_id in payload.bottom_order:
            card = self.cards.get(card_id)
            if card is None or card.owner_id != payload.player_id or card.zone != Zone.LIBRARY:
                continue
            card.stack_index = self._bottom_index(card.owner_id, Zone.LIBRARY, exclude=card.id)

    # =========================================================================
    # Snapshot
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Canonical snapshot, ordered by id so equal boards serialize equally."""
        return {
            "cards": [self.cards[k].to_dict() for k in sorted(self.cards)],
            "players": [self.players[k].to_dict() for k in sorted(self.players)],
            "counters": [self.counters[k].to_dict() for k in sorted(self.counters)],
            "anchors": {
                zone.value: {name: point.to_dict() for name, point in sorted(points.items())}
                for zone, points in sorted(self.anchors.items(), key=lambda item: item[0].value)
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], rng: random.Random | None = None) -> "BoardStore":
        store = cls(rng=rng)
        for card_data in data.get("cards", []):
            card = Card.from_dict(card_data)
            store.cards[card.id] = card
        for player_data in data.get("players", []):
            player = Player.from_dict(player_data)
            store.players[player.id] = player
        for counter_data in data.get("counters", []):
            counter = Counter.from_dict(counter_data)
            store.counters[counter.id] = counter
        for zone_value, points in (data.get("anchors") or {}).items():
            store.anchors[Zone(zone_value)] = {name: Point.from_dict(p) for name, p in points.items()}
        return store

    def checksum(self) -> str:
        """Short digest of the canonical snapshot."""
        content = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def copy(self) -> "BoardStore":
        """Independent copy sharing the random source."""
        return BoardStore.from_dict(self.to_dict(), rng=self._rng)

