"""
Replication Engine

Turns local intents into Actions, applies them optimistically and hands
them to the session for delivery; applies Actions received from the network
through the same path.

The host keeps a single authoritative board. A peer keeps two: the
*confirmed* board, which only ever sees actions in the host's order, and the
*speculative* board shown to the user, which is confirmed plus the peer's own
actions the host has not acknowledged yet.
"""

import random
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from boardsync.board.actions import (
    HOST_ONLY_KINDS,
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
    Payload,
    PlayerJoined,
    PlayerLeft,
    RemoveCard,
    RemoveCounter,
    ReorderHand,
    ReplaceLibrary,
    SetCommander,
    SetCommanderDamage,
    ShuffleLibrary,
    ToggleTap,
)
from boardsync.board.models import DEFAULT_LIFE, CounterKind, LibraryPlacement, Point, Zone
from boardsync.board.store import BoardStore
from boardsync.config import SessionConfig
from boardsync.errors import OwnershipViolation, StaleReferenceError
from boardsync.logging import get_logger
from boardsync.sync.protocol import Role

logger = get_logger("sync.engine")

# Durable sequence numbers remembered per actor for deduplication
SEEN_WINDOW = 1024

ActionSender = Callable[[Action, str | None], None]
AckSender = Callable[[Action, bool, str], None]
SnapshotRequester = Callable[[int], None]


@dataclass
class PendingAction:
    """A durable action waiting for the host's acknowledgment."""

    action: Action
    sent_at: float
    attempts: int = 1


class SeqWindow:
    """Bounded record of durable seqs already handled for one actor."""

    def __init__(self, maxlen: int = SEEN_WINDOW):
        self.maxlen = maxlen
        self._results: OrderedDict[int, bool] = OrderedDict()

    def get(self, seq: int) -> bool | None:
        """Return the recorded outcome for ``seq``, or None if unseen."""
        return self._results.get(seq)

    def record(self, seq: int, accepted: bool) -> None:
        self._results[seq] = accepted
        while len(self._results) > self.maxlen:
            self._results.popitem(last=False)

    def __len__(self) -> int:
        return len(self._results)


class ReplicationEngine:
    """
    Applies and distributes board actions for one client.

    The session binds itself with ``bind`` to receive outgoing actions and
    acknowledgments; without a binding the engine works as a solo board.
    """

    def __init__(
        self,
        player_id: str,
        player_name: str,
        config: SessionConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.player_id = player_id
        self.player_name = player_name
        self.config = config or SessionConfig()
        self._rng = rng or random.Random()
        self._clock = clock

        self.role = Role.HOST
        self.confirmed = BoardStore(rng=self._rng)
        self.speculative = self.confirmed

        self._seq = 0
        self._outbox: OrderedDict[int, PendingAction] = OrderedDict()
        self._seen: dict[str, SeqWindow] = {}
        self._latest: dict[tuple[str, str | None], int] = {}
        self._drags: dict[str, Payload] = {}

        self._resync_requested_at: float | None = None

        self._send_action: ActionSender | None = None
        self._send_ack: AckSender | None = None
        self._request_snapshot: SnapshotRequester | None = None

        # Callbacks
        self._on_change: list[Callable[[Action | None], None]] = []

        logger.info(f"ReplicationEngine initialized for {player_name}")

    # =========================================================================
    # Wiring
    # =========================================================================

    def bind(
        self,
        send_action: ActionSender,
        send_ack: AckSender,
        request_snapshot: SnapshotRequester | None = None,
    ) -> None:
        """Attach the outgoing side (normally a SessionManager)."""
        self._send_action = send_action
        self._send_ack = send_ack
        self._request_snapshot = request_snapshot

    def unbind(self) -> None:
        self._send_action = None
        self._send_ack = None
        self._request_snapshot = None

    def add_change_callback(self, callback: Callable[[Action | None], None]) -> None:
        """Add callback for board changes. Called with None after bulk changes."""
        self._on_change.append(callback)

    def set_role(self, role: Role) -> None:
        """Switch between host (one board) and peer (confirmed + speculative)."""
        self.role = role
        self._outbox.clear()
        self._drags.clear()
        self._resync_requested_at = None
        self.speculative = self.confirmed if role == Role.HOST else self.confirmed.copy()
        logger.debug(f"Role set to {role.value}")

    @property
    def store(self) -> BoardStore:
        """The board to display."""
        return self.speculative

    @property
    def is_host(self) -> bool:
        return self.role == Role.HOST

    @property
    def pending_count(self) -> int:
        """Number of durable actions awaiting acknowledgment."""
        return len(self._outbox)

    @property
    def awaiting_snapshot(self) -> bool:
        return self._resync_requested_at is not None

    def _notify(self, action: Action | None) -> None:
        for callback in self._on_change:
            try:
                callback(action)
            except Exception as e:
                logger.error(f"Change callback error: {e}")

    # =========================================================================
    # Apply path
    # =========================================================================

    def apply_action(self, action: Action, store: BoardStore | None = None) -> bool:
        """
        Apply one action to a board (the displayed board by default).

        Returns:
            False if the action referenced something that no longer exists
        """
        target = store if store is not None else self.store
        try:
            target.apply(action)
        except StaleReferenceError as e:
            logger.debug(f"Dropping stale {action.kind.value} from {action.actor_id[:8]}: {e.message}")
            return False
        if isinstance(action.payload, PlayerJoined):
            self._forget_actor(action.payload.player.id)
        return True

    def _forget_actor(self, actor_id: str) -> None:
        """A (re)joining player starts a fresh sequence."""
        if actor_id == self.player_id:
            return
        self._seen.pop(actor_id, None)
        for key in [k for k in self._latest if k[0] == actor_id]:
            del self._latest[key]

    def _commit(self, payload: Payload | None, persist: bool = True) -> Action | None:
        """Apply a locally resolved payload and publish it."""
        if payload is None:
            return None
        if payload.kind in HOST_ONLY_KINDS and not self.is_host:
            logger.warning(f"Only the host can send {payload.kind.value}")
            return None

        self._seq += 1
        action = Action(actor_id=self.player_id, payload=payload, persist=persist, seq=self._seq)
        if not self.apply_action(action):
            return None

        if persist and not self.is_host and self._send_action is not None:
            self._outbox[action.seq] = PendingAction(action=action, sent_at=self._clock())
        self._publish(action)
        self._notify(action)
        return action

    def _publish(self, action: Action, exclude: str | None = None) -> None:
        if self._send_action is not None:
            self._send_action(action, exclude)

    def _is_superseded(self, action: Action) -> bool:
        return action.seq <= self._latest.get((action.actor_id, action.target_id), 0)

    def _window(self, actor_id: str) -> SeqWindow:
        return self._seen.setdefault(actor_id, SeqWindow())

    def _record(self, action: Action, accepted: bool) -> None:
        key = (action.actor_id, action.target_id)
        self._latest[key] = max(self._latest.get(key, 0), action.seq)
        if action.persist:
            self._window(action.actor_id).record(action.seq, accepted)

    # =========================================================================
    # Remote actions
    # =========================================================================

    def receive(self, action: Action) -> bool:
        """
        Apply an action forwarded by the host (peer side).

        Returns:
            True if the action changed the confirmed board
        """
        if action.persist and self._window(action.actor_id).get(action.seq) is not None:
            logger.debug(f"Duplicate {action.kind.value} seq {action.seq}")
            return False
        if not action.persist and self._is_superseded(action):
            logger.debug(f"Superseded {action.kind.value} seq {action.seq}")
            return False

        applied = self.apply_action(action, self.confirmed)
        if self.speculative is not self.confirmed:
            self.apply_action(action, self.speculative)
        self._record(action, applied)
        self._notify(action)
        return applied

    def receive_from_peer(self, action: Action, origin_player_id: str) -> bool:
        """
        Validate, apply and fan out an action sent by a peer (host side).

        Returns:
            True if the action was accepted and forwarded
        """
        if action.actor_id != origin_player_id:
            logger.debug(f"Actor mismatch: {action.actor_id[:8]} sent by {origin_player_id[:8]}")
            self._ack(action, False, origin_player_id)
            return False

        if action.persist:
            previous = self._window(action.actor_id).get(action.seq)
            if previous is not None:
                logger.debug(f"Duplicate {action.kind.value} seq {action.seq}, re-acknowledging")
                self._ack(action, previous, origin_player_id)
                return False
        elif self._is_superseded(action):
            logger.debug(f"Superseded {action.kind.value} seq {action.seq}")
            return False

        try:
            self.authorize(action)
        except OwnershipViolation as e:
            logger.debug(f"Rejected {action.kind.value}: {e.message}")
            self._ack(action, False, origin_player_id)
            return False

        applied = self.apply_action(action, self.confirmed)
        self._record(action, applied)
        self._ack(action, applied, origin_player_id)
        if applied:
            self._publish(action, exclude=origin_player_id)
            self._notify(action)
        return applied

    def _ack(self, action: Action, accepted: bool, origin_player_id: str) -> None:
        if action.persist and self._send_ack is not None:
            self._send_ack(action, accepted, origin_player_id)

    def authorize(self, action: Action) -> None:
        """Raise OwnershipViolation if the actor may not perform ``action``."""
        allowed = self._allowed_actors(action.payload)
        if allowed is not None and action.actor_id not in allowed:
            raise OwnershipViolation(
                f"{action.kind.value} not permitted for this player",
                actor_id=action.actor_id,
                target_id=action.target_id,
            )

    def _allowed_actors(self, payload: Payload) -> frozenset[str] | None:
        """Players allowed to originate ``payload``; None means anyone."""
        store = self.confirmed
        match payload:
            case PlayerJoined() | PlayerLeft():
                return frozenset()
            case AddCard(card=card):
                return frozenset({card.owner_id})
            case CreateCounter(counter=counter):
                return frozenset({counter.owner_id})
            case (
                MoveCard(card_id=card_id)
                | ChangeZone(card_id=card_id)
                | ToggleTap(card_id=card_id)
                | FlipCard(card_id=card_id)
                | RemoveCard(card_id=card_id)
                | SetCommander(card_id=card_id)
            ):
                card = store.get_card(card_id)
                return frozenset({card.owner_id}) if card else None
            case MoveCounter(counter_id=counter_id) | ModifyCounter(counter_id=counter_id) | RemoveCounter(
                counter_id=counter_id
            ):
                counter = store.counters.get(counter_id)
                return frozenset({counter.owner_id}) if counter else None
            case (
                ReorderHand(player_id=player_id)
                | DrawCard(player_id=player_id)
                | ShuffleLibrary(player_id=player_id)
                | ReplaceLibrary(player_id=player_id)
                | Cascade(player_id=player_id)
            ):
                return frozenset({player_id})
            case MoveAnchor(player_name=player_name):
                player = store.player_by_name(player_name)
                return frozenset({player.id}) if player else frozenset()
            case SetCommanderDamage(target_player_id=target, attacker_player_id=attacker) | AdjustCommanderDamage(
                target_player_id=target, attacker_player_id=attacker
            ):
                return frozenset({target, attacker})
            case _:
                return None

    # =========================================================================
    # Acknowledgments, retries and snapshots (peer side)
    # =========================================================================

    def handle_ack(self, seq: int, accepted: bool) -> None:
        """Settle one of our durable actions."""
        pending = self._outbox.pop(seq, None)
        if pending is None:
            logger.debug(f"Ack for unknown seq {seq}")
            return

        if accepted:
            self.apply_action(pending.action, self.confirmed)
            diverged = self.speculative.checksum() != self.confirmed.checksum()
            if diverged and not self._outbox and not self.awaiting_snapshot:
                logger.debug("Speculative board diverged from confirmed, resetting")
                self.speculative = self.confirmed.copy()
        else:
            logger.info(f"Host rejected {pending.action.kind.value} (seq {seq})")
            self._rebuild_speculative()
        self._notify(None)

    def _rebuild_speculative(self) -> None:
        speculative = self.confirmed.copy()
        for pending in self._outbox.values():
            self.apply_action(pending.action, speculative)
        self.speculative = speculative

    def due_for_retry(self, now: float | None = None) -> list[Action]:
        """Collect unacknowledged actions whose ack timeout has passed."""
        now = self._clock() if now is None else now
        due = []
        lost = 0
        for seq, pending in list(self._outbox.items()):
            if now - pending.sent_at < self.config.ack_timeout:
                continue
            if pending.attempts > self.config.ack_retries:
                del self._outbox[seq]
                logger.warning(
                    f"No ack for {pending.action.kind.value} seq {seq} after "
                    f"{pending.attempts} attempts, waiting for resync"
                )
                lost += 1
                continue
            pending.attempts += 1
            pending.sent_at = now
            due.append(pending.action)
        if lost:
            self.request_resync(f"{lost} actions unacknowledged", now)
        return due

    def retry_pending(self, now: float | None = None) -> int:
        """
        Re-send durable actions that timed out.

        Returns:
            Number of actions re-sent
        """
        now = self._clock() if now is None else now
        due = self.due_for_retry(now)
        for action in due:
            self._publish(action)
        if due:
            logger.debug(f"Re-sent {len(due)} unacknowledged actions")

        if self.awaiting_snapshot and now - self._resync_requested_at >= self.config.ack_timeout:
            self.request_resync("snapshot still missing", now)
        return len(due)

    def request_resync(self, reason: str, now: float | None = None) -> None:
        """
        Ask the host for a snapshot.

        The request is repeated every ack timeout by ``retry_pending`` until a
        snapshot arrives; until then the speculative board is kept as is.
        """
        self._resync_requested_at = self._clock() if now is None else now
        logger.info(f"Requesting snapshot: {reason}")
        if self._request_snapshot is not None:
            self._request_snapshot(self._seq)

    def load_snapshot(self, snapshot: dict[str, Any], up_to_seq: int | None = None) -> None:
        """
        Replace both boards with the host's snapshot.

        Args:
            snapshot: Board as produced by ``BoardStore.to_dict``
            up_to_seq: Set when the snapshot answers our resync request: the
                host had handled everything we sent up to this seq. Later
                durable actions are still in flight, stay pending and are
                replayed onto the speculative board. Without it (joining,
                rejoining) all pending state is discarded.

        The snapshot is also the new baseline for every other actor's
        sequence numbers: a restarted host counts from 1 again.
        """
        if up_to_seq is None:
            stale = list(self._outbox)
        else:
            stale = [seq for seq in self._outbox if seq <= up_to_seq]
        for seq in stale:
            del self._outbox[seq]
        dropped = len(stale)

        self.confirmed = BoardStore.from_dict(snapshot, rng=self._rng)
        if self.is_host:
            self.speculative = self.confirmed
        else:
            self._rebuild_speculative()
        self._drags.clear()
        self._resync_requested_at = None
        self._seen = {k: v for k, v in self._seen.items() if k == self.player_id}
        self._latest = {k: v for k, v in self._latest.items() if k[0] == self.player_id}
        if dropped and up_to_seq is None:
            logger.info(f"Discarded {dropped} unconfirmed actions after resync")
        self._notify(None)

    def snapshot(self) -> dict[str, Any]:
        """The authoritative board as a snapshot."""
        return self.confirmed.to_dict()

    # =========================================================================
    # Drag coalescing
    # =========================================================================

    def _drag(self, payload: Payload | None) -> Action | None:
        if payload is None:
            return None
        if self.config.drag_interval <= 0:
            return self._commit(payload, persist=False)

        # Show it now, send only the latest position per target on flush
        preview = Action(actor_id=self.player_id, payload=payload, persist=False)
        if self.apply_action(preview):
            self._drags[payload.target_id] = payload
            self._notify(None)
        return None

    def flush_drags(self) -> int:
        """
        Send the latest queued drag position of every target.

        Positions for cards that were removed or changed zone since are
        dropped by the apply path.

        Returns:
            Number of updates sent
        """
        drags, self._drags = self._drags, {}
        sent = 0
        for payload in drags.values():
            if self._commit(payload, persist=False) is not None:
                sent += 1
        return sent

    # =========================================================================
    # Cards
    # =========================================================================

    def add_card(
        self,
        name: str,
        zone: Zone = Zone.BATTLEFIELD,
        position: Point | None = None,
        metadata: dict[str, Any] | None = None,
        is_commander: bool = False,
    ) -> Action | None:
        """Put a new card of ours on the table."""
        return self._commit(
            self.store.resolve_add_card(self.player_id, name, zone, position, metadata, is_commander)
        )

    def drag_card(self, card_id: str, position: Point) -> Action | None:
        """Intermediate position while dragging (ephemeral)."""
        return self._drag(self.store.resolve_move_card(card_id, position))

    def move_card(self, card_id: str, position: Point) -> Action | None:
        """Final position of a card (durable)."""
        self._drags.pop(card_id, None)
        return self._commit(self.store.resolve_move_card(card_id, position))

    def change_zone(
        self,
        card_id: str,
        zone: Zone,
        position: Point | None = None,
        placement: LibraryPlacement | None = None,
    ) -> Action | None:
        self._drags.pop(card_id, None)
        return self._commit(self.store.resolve_change_zone(card_id, zone, position, placement))

    def toggle_tap(self, card_id: str) -> Action | None:
        return self._commit(self.store.resolve_toggle_tap(card_id))

    def flip_card(self, card_id: str) -> Action | None:
        return self._commit(self.store.resolve_flip_card(card_id))

    def remove_card(self, card_id: str) -> Action | None:
        self._drags.pop(card_id, None)
        return self._commit(self.store.resolve_remove_card(card_id))

    def set_commander(self, card_id: str, position: Point | None = None) -> Action | None:
        return self._commit(self.store.resolve_set_commander(card_id, position))

    def send_commander(self, card_id: str) -> Action | None:
        """Return a commander to the command zone, counting a death."""
        return self._commit(self.store.resolve_send_commander(card_id))

    def reset_board(self) -> int:
        """Remove every card we own. Returns the number removed."""
        removed = 0
        for card in list(self.store.cards.values()):
            if card.owner_id == self.player_id and self.remove_card(card.id) is not None:
                removed += 1
        return removed

    # =========================================================================
    # Zone piles
    # =========================================================================

    def drag_anchor(self, zone: Zone, position: Point) -> Action | None:
        return self._drag(self.store.resolve_move_anchor(zone, self.player_name, position))

    def move_anchor(self, zone: Zone, position: Point) -> Action | None:
        payload = self.store.resolve_move_anchor(zone, self.player_name, position)
        if payload is not None:
            self._drags.pop(payload.target_id, None)
        return self._commit(payload)

    def reorder_hand(self, card_id: str, new_index: int) -> Action | None:
        return self._commit(self.store.resolve_reorder_hand(self.player_id, card_id, new_index))

    def reorder_library(self, card_id: str, new_index: int) -> Action | None:
        return self._commit(self.store.resolve_reorder_library(self.player_id, card_id, new_index))

    def draw(self) -> Action | None:
        """Draw the top card of our library."""
        return self._commit(self.store.resolve_draw(self.player_id))

    def shuffle_library(self) -> Action | None:
        return self._commit(self.store.resolve_shuffle(self.player_id))

    def mulligan(self) -> Action | None:
        return self._commit(self.store.resolve_mulligan(self.player_id))

    def replace_library(self, entries: list[dict[str, Any]]) -> Action | None:
        return self._commit(self.store.resolve_replace_library(self.player_id, entries))

    def cascade(self, max_cmc: int, position: Point | None = None) -> Action | None:
        return self._commit(self.store.resolve_cascade(self.player_id, max_cmc, position))

    # =========================================================================
    # Counters
    # =========================================================================

    def create_counter(self, kind: CounterKind = CounterKind.NUMERAL, position: Point | None = None) -> Action | None:
        return self._commit(self.store.resolve_create_counter(self.player_id, kind, position))

    def drag_counter(self, counter_id: str, position: Point) -> Action | None:
        return self._drag(self.store.resolve_move_counter(counter_id, position))

    def move_counter(self, counter_id: str, position: Point) -> Action | None:
        self._drags.pop(counter_id, None)
        return self._commit(self.store.resolve_move_counter(counter_id, position))

    def modify_counter(self, counter_id: str, **changes: int | None) -> Action | None:
        return self._commit(self.store.resolve_modify_counter(counter_id, **changes))

    def remove_counter(self, counter_id: str) -> Action | None:
        self._drags.pop(counter_id, None)
        return self._commit(self.store.resolve_remove_counter(counter_id))

    # =========================================================================
    # Players
    # =========================================================================

    def set_life(self, life: int, player_id: str | None = None) -> Action | None:
        return self._commit(self.store.resolve_set_life(player_id or self.player_id, life))

    def change_life(self, delta: int, player_id: str | None = None) -> Action | None:
        return self._commit(self.store.resolve_change_life(player_id or self.player_id, delta))

    def set_commander_damage(self, target_player_id: str, attacker_player_id: str, damage: int) -> Action | None:
        return self._commit(
            self.store.resolve_set_commander_damage(target_player_id, attacker_player_id, damage)
        )

    def adjust_commander_damage(self, target_player_id: str, attacker_player_id: str, delta: int) -> Action | None:
        return self._commit(
            self.store.resolve_adjust_commander_damage(target_player_id, attacker_player_id, delta)
        )

    def join_player(
        self,
        player_id: str,
        name: str,
        life: int = DEFAULT_LIFE,
        commander_damage: dict[str, int] | None = None,
    ) -> Action | None:
        """Seat a player (host only)."""
        return self._commit(self.store.resolve_player_joined(player_id, name, life, commander_damage))

    def leave_player(self, player_id: str) -> Action | None:
        """Remove a player's seat (host only). Their cards stay on the table."""
        return self._commit(self.store.resolve_player_left(player_id))

