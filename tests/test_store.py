"""
Tests for the board store: zone algorithms, library operations and snapshots.
"""

import random

import pytest
from conftest import put_card, seat

from boardsync.board.actions import (
    Action,
    AdjustCommanderDamage,
    ChangeZone,
    ModifyCounter,
    MoveCard,
    MoveAnchor,
    RemoveCard,
    ToggleTap,
)
from boardsync.board.models import Card, CounterKind, LibraryPlacement, Point, Zone
from boardsync.board.store import BoardStore
from boardsync.errors import StaleReferenceError


def act(store: BoardStore, payload, actor: str = "p1") -> Action:
    action = Action(actor_id=actor, payload=payload)
    store.apply(action)
    return action


def library_ids(store: BoardStore, owner: str = "p1") -> list[str]:
    return [c.id for c in store.library(owner)]


# =============================================================================
# Zone placement
# =============================================================================


class TestLibraryPlacement:
    """Tests for placing cards into a library."""

    def _library(self, store):
        for index, card_id in enumerate(["a", "b", "c"]):
            put_card(store, card_id, "p1", Zone.LIBRARY, stack_index=index)

    def test_top_placement(self, store):
        self._library(store)
        act(store, ChangeZone(card_id="a", zone=Zone.LIBRARY, position=Point(), placement=LibraryPlacement.TOP))
        assert store.cards["a"].stack_index == 3
        assert library_ids(store) == ["a", "c", "b"]

    def test_bottom_placement(self, store):
        self._library(store)
        act(store, ChangeZone(card_id="c", zone=Zone.LIBRARY, position=Point(), placement=LibraryPlacement.BOTTOM))
        assert store.cards["c"].stack_index == -1
        assert library_ids(store)[-1] == "c"

    def test_bottom_placement_is_idempotent(self, store):
        """Applying the same bottom move twice lands on the same index."""
        self._library(store)
        payload = ChangeZone(card_id="c", zone=Zone.LIBRARY, position=Point(), placement=LibraryPlacement.BOTTOM)
        act(store, payload)
        first = store.cards["c"].stack_index
        act(store, payload)
        assert store.cards["c"].stack_index == first == -1

    def test_placement_into_empty_library(self, store):
        put_card(store, "x", "p1")
        act(store, ChangeZone(card_id="x", zone=Zone.LIBRARY, position=Point(), placement=LibraryPlacement.BOTTOM))
        assert store.cards["x"].stack_index == 0

    def test_default_placement_is_top(self, store):
        self._library(store)
        put_card(store, "x", "p1")
        payload = store.resolve_change_zone("x", Zone.LIBRARY)
        assert payload.placement == LibraryPlacement.TOP
        act(store, payload)
        assert library_ids(store)[0] == "x"

    def test_random_placement_is_resolved_in_range(self, store):
        self._library(store)
        put_card(store, "x", "p1")
        payload = store.resolve_change_zone("x", Zone.LIBRARY, placement=LibraryPlacement.RANDOM)
        assert 0 <= payload.stack_index <= 2

        replica = BoardStore.from_dict(store.to_dict())
        act(store, payload)
        act(replica, payload)
        assert store.cards["x"].stack_index == payload.stack_index
        assert library_ids(store) == library_ids(replica)

    def test_other_owners_are_ignored(self, store):
        put_card(store, "bob-card", "p2", Zone.LIBRARY, stack_index=10)
        put_card(store, "x", "p1")
        act(store, ChangeZone(card_id="x", zone=Zone.LIBRARY, position=Point()))
        assert store.cards["x"].stack_index == 0


class TestZoneChanges:
    """Tests for hand, battlefield and pile transitions."""

    def test_hand_appends_and_renumbers(self, store):
        for card_id in ["h1", "h2", "h3"]:
            put_card(store, card_id, "p1", Zone.HAND)
        assert [c.hand_index for c in store.hand("p1")] == [0, 1, 2]

        act(store, ChangeZone(card_id="h2", zone=Zone.BATTLEFIELD, position=Point(5, 5)))
        assert [(c.id, c.hand_index) for c in store.hand("p1")] == [("h1", 0), ("h3", 1)]
        assert store.cards["h2"].hand_index is None

    def test_card_entering_hand_goes_last(self, store):
        put_card(store, "h1", "p1", Zone.HAND)
        put_card(store, "x", "p1", Zone.CEMETERY)
        act(store, ChangeZone(card_id="x", zone=Zone.HAND, position=Point()))
        assert [c.id for c in store.hand("p1")] == ["h1", "x"]
        assert store.cards["x"].stack_index is None

    def test_battlefield_clears_indices(self, store):
        put_card(store, "a", "p1", Zone.LIBRARY, stack_index=4)
        act(store, ChangeZone(card_id="a", zone=Zone.BATTLEFIELD, position=Point(1, 2)))
        card = store.cards["a"]
        assert card.stack_index is None
        assert card.hand_index is None
        assert card.position == Point(1, 2)

    def test_cemetery_goes_on_top(self, store):
        put_card(store, "g1", "p1", Zone.CEMETERY)
        put_card(store, "g2", "p1", Zone.CEMETERY)
        put_card(store, "x", "p1")
        act(store, ChangeZone(card_id="x", zone=Zone.CEMETERY, position=Point()))
        assert [c.id for c in store.pile("p1", Zone.CEMETERY)] == ["x", "g2", "g1"]

    def test_leaving_battlefield_untaps(self, store):
        put_card(store, "a", "p1", tapped=True)
        act(store, ChangeZone(card_id="a", zone=Zone.EXILE, position=Point()))
        assert store.cards["a"].tapped is False

    def test_reorder_hand(self, store):
        for card_id in ["h1", "h2", "h3"]:
            put_card(store, card_id, "p1", Zone.HAND)
        act(store, store.resolve_reorder_hand("p1", "h3", 0))
        assert [c.id for c in store.hand("p1")] == ["h3", "h1", "h2"]

    def test_reorder_library(self, store):
        for index, card_id in enumerate(["a", "b", "c"]):
            put_card(store, card_id, "p1", Zone.LIBRARY, stack_index=index)
        act(store, store.resolve_reorder_library("p1", "a", 0))
        assert library_ids(store) == ["a", "c", "b"]
        assert sorted(c.stack_index for c in store.library("p1")) == [0, 1, 2]

    def test_move_card_expects_zone(self, store):
        put_card(store, "h1", "p1", Zone.HAND)
        with pytest.raises(StaleReferenceError):
            act(store, MoveCard(card_id="h1", position=Point(1, 1), zone=Zone.BATTLEFIELD))

    def test_missing_card_is_stale(self, store):
        with pytest.raises(StaleReferenceError):
            act(store, ToggleTap(card_id="ghost"))
        assert store.resolve_toggle_tap("ghost") is None

    def test_anchor_keyed_by_player_name(self, store):
        act(store, MoveAnchor(zone=Zone.LIBRARY, player_name="Alice", position=Point(300, 40)))
        assert store.anchor(Zone.LIBRARY, "Alice") == Point(300, 40)
        assert store.resolve_move_anchor(Zone.BATTLEFIELD, "Alice", Point()) is None

    def test_new_library_card_uses_anchor(self, store):
        act(store, MoveAnchor(zone=Zone.LIBRARY, player_name="Alice", position=Point(300, 40)))
        payload = store.resolve_add_card("p1", "Forest", zone=Zone.LIBRARY)
        assert payload.card.position == Point(300, 40)


# =============================================================================
# Library operations
# =============================================================================


class TestLibraryOperations:
    """Tests for draw, shuffle, mulligan and replace."""

    def test_draw_takes_highest_stack_index(self, store):
        for index, card_id in enumerate(["a", "b", "c"]):
            put_card(store, card_id, "p1", Zone.LIBRARY, stack_index=index)

        payload = store.resolve_draw("p1")
        assert payload.card_id == "c"
        act(store, payload)

        assert store.cards["c"].zone == Zone.HAND
        assert store.cards["c"].hand_index == 0
        assert {c.stack_index for c in store.library("p1")} == {0, 1}

    def test_draw_ties_broken_by_id(self, store):
        put_card(store, "a", "p1", Zone.LIBRARY, stack_index=1)
        put_card(store, "b", "p1", Zone.LIBRARY, stack_index=1)
        assert store.resolve_draw("p1").card_id == "b"

    def test_draw_from_empty_library(self, store):
        assert store.resolve_draw("p1") is None

    def test_draw_of_card_that_left_library_is_stale(self, store):
        put_card(store, "a", "p1", Zone.LIBRARY, stack_index=0)
        payload = store.resolve_draw("p1")
        act(store, ChangeZone(card_id="a", zone=Zone.EXILE, position=Point()))
        with pytest.raises(StaleReferenceError):
            act(store, payload)

    def test_shuffle_assigns_contiguous_indices(self, store):
        for index in range(6):
            put_card(store, f"c{index}", "p1", Zone.LIBRARY, stack_index=index * 3 - 5)

        payload = store.resolve_shuffle("p1")
        act(store, payload)

        assert sorted(c.stack_index for c in store.library("p1")) == list(range(6))
        assert library_ids(store) == list(payload.order)

    def test_shuffle_keeps_late_arrivals_below(self, store):
        for index in range(3):
            put_card(store, f"c{index}", "p1", Zone.LIBRARY, stack_index=index)
        payload = store.resolve_shuffle("p1")
        put_card(store, "late", "p1", Zone.LIBRARY)
        act(store, payload)
        assert library_ids(store) == list(payload.order) + ["late"]

    def test_mulligan_returns_hand_and_shuffles(self, store):
        for card_id in ["h1", "h2"]:
            put_card(store, card_id, "p1", Zone.HAND)
        for index, card_id in enumerate(["a", "b", "c"]):
            put_card(store, card_id, "p1", Zone.LIBRARY, stack_index=index)

        payload = store.resolve_mulligan("p1")
        assert set(payload.order) == {"h1", "h2", "a", "b", "c"}
        act(store, payload)

        assert store.hand("p1") == []
        assert sorted(c.stack_index for c in store.library("p1")) == [0, 1, 2, 3, 4]
        assert all(c.hand_index is None for c in store.library("p1"))

    def test_mulligan_without_hand(self, store):
        assert store.resolve_mulligan("p1") is None

    def test_replace_library(self, store):
        put_card(store, "old", "p1", Zone.LIBRARY)
        put_card(store, "bob", "p2", Zone.LIBRARY)
        payload = store.resolve_replace_library("p1", [{"name": "Sol Ring"}, {"name": "Forest"}])
        act(store, payload)

        assert "old" not in store.cards
        assert "bob" in store.cards
        assert [c.name for c in store.library("p1")] == ["Sol Ring", "Forest"]


# =============================================================================
# Cascade
# =============================================================================


class TestCascade:
    """Tests for reveal-until-hit."""

    def test_stops_at_first_hit(self, store):
        put_card(store, "A", "p1", Zone.LIBRARY, stack_index=2, metadata={"cmc": 2})
        put_card(store, "B", "p1", Zone.LIBRARY, stack_index=1, metadata={"cmc": 4})
        put_card(store, "C", "p1", Zone.LIBRARY, stack_index=0, metadata={"cmc": 1})

        payload = store.resolve_cascade("p1", 3)
        assert payload.hit_card_id == "A"
        assert payload.bottom_order == ()

        act(store, payload)
        assert store.cards["A"].zone == Zone.BATTLEFIELD
        assert library_ids(store) == ["B", "C"]
        assert store.cards["B"].stack_index == 1
        assert store.cards["C"].stack_index == 0

    def test_misses_go_to_bottom(self, store):
        land = {"cmc": 0, "type_line": "Basic Land"}
        put_card(store, "L", "p1", Zone.LIBRARY, stack_index=3, metadata=land)
        put_card(store, "B", "p1", Zone.LIBRARY, stack_index=2, metadata={"cmc": 5})
        put_card(store, "C", "p1", Zone.LIBRARY, stack_index=1, metadata={"mana_cost": "{1}"})
        put_card(store, "D", "p1", Zone.LIBRARY, stack_index=0, metadata={"cmc": 0})

        payload = store.resolve_cascade("p1", 1, Point(50, 50))
        assert payload.hit_card_id == "C"
        assert set(payload.bottom_order) == {"L", "B"}

        act(store, payload)
        assert store.cards["C"].zone == Zone.BATTLEFIELD
        assert store.cards["C"].position == Point(50, 50)
        ids = library_ids(store)
        assert ids[0] == "D"
        assert set(ids[1:]) == {"L", "B"}

    def test_no_hit_sends_everything_to_bottom(self, store):
        put_card(store, "A", "p1", Zone.LIBRARY, stack_index=1, metadata={"cmc": 6})
        put_card(store, "B", "p1", Zone.LIBRARY, stack_index=0, metadata={"cmc": 7})
        payload = store.resolve_cascade("p1", 2)
        assert payload.hit_card_id is None
        act(store, payload)
        assert len(store.library("p1")) == 2

    def test_cmc_parsed_from_mana_cost(self):
        card = Card(id="x", owner_id="p1", metadata={"mana_cost": "{2}{G}{G}"})
        assert card.cmc == 4
        assert Card(id="y", owner_id="p1", metadata={"mana_cost": "{X}{R}"}).cmc == 1
        assert Card(id="z", owner_id="p1", metadata={"cmc": 3, "mana_cost": "{G}"}).cmc == 3


# =============================================================================
# Commanders, counters and players
# =============================================================================


class TestCommander:
    """Tests for commander handling."""

    def test_set_commander(self, store):
        put_card(store, "cmd", "p1", Zone.HAND)
        act(store, store.resolve_set_commander("cmd", Point(1, 1)))
        card = store.cards["cmd"]
        assert card.zone == Zone.COMMANDER
        assert card.is_commander is True
        assert card.commander_deaths == 0
        assert store.hand("p1") == []

    def test_returning_commander_counts_deaths(self, store):
        put_card(store, "cmd", "p1", is_commander=True)
        act(store, store.resolve_send_commander("cmd"))
        assert store.cards["cmd"].commander_deaths == 1

        act(store, ChangeZone(card_id="cmd", zone=Zone.BATTLEFIELD, position=Point()))
        act(store, store.resolve_send_commander("cmd"))
        assert store.cards["cmd"].commander_deaths == 2

    def test_only_commanders_can_be_sent(self, store):
        put_card(store, "plain", "p1")
        assert store.resolve_send_commander("plain") is None


class TestCounters:
    """Tests for counter tokens."""

    def test_numeral_counter_floors_at_zero(self, store):
        counter = act(store, store.resolve_create_counter("p1")).payload.counter
        act(store, ModifyCounter(counter_id=counter.id, delta=-3))
        assert store.counters[counter.id].value == 0
        act(store, ModifyCounter(counter_id=counter.id, delta=2))
        act(store, ModifyCounter(counter_id=counter.id, set_value=5))
        assert store.counters[counter.id].value == 5

    def test_plus_counter(self, store):
        counter = act(store, store.resolve_create_counter("p1", CounterKind.PLUS)).payload.counter
        act(store, ModifyCounter(counter_id=counter.id, delta_x=1, delta_y=1))
        act(store, ModifyCounter(counter_id=counter.id, delta_x=2))
        assert (store.counters[counter.id].plus_x, store.counters[counter.id].plus_y) == (3, 1)

    def test_removing_card_keeps_counters(self, store):
        put_card(store, "a", "p1")
        counter = act(store, store.resolve_create_counter("p1")).payload.counter
        act(store, RemoveCard(card_id="a"))
        assert counter.id in store.counters


class TestPlayers:
    """Tests for life and commander damage."""

    def test_change_life_resolves_absolute_total(self, store):
        payload = store.resolve_change_life("p1", -5)
        assert payload.life == 35
        act(store, payload)
        act(store, store.resolve_change_life("p1", -100))
        assert store.players["p1"].life == 0

    def test_adjust_commander_damage(self, store):
        act(store, AdjustCommanderDamage(target_player_id="p1", attacker_player_id="p2", delta=5))
        alice = store.players["p1"]
        assert alice.life == 35
        assert alice.commander_damage["p2"] == 5

        act(store, AdjustCommanderDamage(target_player_id="p1", attacker_player_id="p2", delta=-10))
        assert alice.commander_damage["p2"] == 0
        assert alice.life == 45

    def test_unknown_player_is_stale(self, store):
        assert store.resolve_change_life("ghost", 1) is None
        with pytest.raises(StaleReferenceError):
            act(store, AdjustCommanderDamage(target_player_id="ghost", attacker_player_id="p1", delta=1))


# =============================================================================
# Snapshots and determinism
# =============================================================================


class TestSnapshot:
    """Tests for snapshot round trips and replica convergence."""

    def _script(self, store: BoardStore) -> list[Action]:
        rng = random.Random(3)
        actions = []
        for i in range(10):
            payload = store.resolve_add_card("p1", f"card-{i}", zone=Zone.LIBRARY)
            actions.append(act(store, payload))
        actions.append(act(store, store.resolve_shuffle("p1")))
        for _ in range(3):
            actions.append(act(store, store.resolve_draw("p1")))
        card_ids = sorted(store.cards)
        for _ in range(10):
            card_id = rng.choice(card_ids)
            placement = rng.choice(list(LibraryPlacement))
            payload = store.resolve_change_zone(card_id, rng.choice(list(Zone)), placement=placement)
            actions.append(act(store, payload))
            actions.append(act(store, store.resolve_move_card(card_id, Point(rng.random(), rng.random()))))
        return actions

    def test_replicas_converge(self, store):
        replica = BoardStore.from_dict(store.to_dict())
        for action in self._script(store):
            replica.apply(action)
        assert replica.to_dict() == store.to_dict()
        assert replica.checksum() == store.checksum()

    def test_round_trip(self, store):
        self._script(store)
        act(store, MoveAnchor(zone=Zone.EXILE, player_name="Bob", position=Point(7, 8)), actor="p2")
        restored = BoardStore.from_dict(store.to_dict())
        assert restored.checksum() == store.checksum()
        assert restored.anchor(Zone.EXILE, "Bob") == Point(7, 8)

    def test_copy_is_independent(self, store):
        put_card(store, "a", "p1")
        clone = store.copy()
        act(clone, ToggleTap(card_id="a"))
        assert store.cards["a"].tapped is False
        assert clone.checksum() != store.checksum()

    def test_checksum_ignores_insertion_order(self):
        first = BoardStore()
        second = BoardStore()
        seat(first, "p1", "Alice")
        seat(first, "p2", "Bob")
        seat(second, "p2", "Bob")
        seat(second, "p1", "Alice")
        assert first.checksum() == second.checksum()
