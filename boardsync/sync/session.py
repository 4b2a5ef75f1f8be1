"""
Session Manager

Owns the room membership of one client: opening the channel, the room
handshake, reconnecting after failures, and (on the host) tracking peer
connections and sending each of them a snapshot on join.
"""

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from boardsync.board.actions import Action
from boardsync.board.models import DEFAULT_LIFE, Player
from boardsync.config import SessionConfig
from boardsync.errors import AuthError, BoardSyncError, ProtocolError, TransportError
from boardsync.logging import get_logger
from boardsync.sync.engine import ReplicationEngine
from boardsync.sync.protocol import (
    MessageType,
    Role,
    SyncMessage,
    create_board_ack,
    create_board_action,
    create_board_state,
    create_client_message,
    create_host_message,
    create_host_transfer,
    create_join_message,
    create_join_rejected,
    create_room_message,
    create_state_request,
)
from boardsync.sync.transport import Transport

logger = get_logger("sync.session")

HANDSHAKE_TIMEOUT = 10.0


class SessionStatus(Enum):
    """Lifecycle of a session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class PeerConnection:
    """A peer seen by the host."""

    connection_id: str
    player_id: str
    player_name: str
    open: bool = True
    connected_at: datetime = field(default_factory=datetime.now)


class SessionManager:
    """
    Room lifecycle for one client.

    Transports are created through ``transport_factory`` so that every
    reconnect gets a fresh channel.
    """

    def __init__(
        self,
        engine: ReplicationEngine,
        transport_factory: Callable[[], Transport],
        config: SessionConfig | None = None,
    ):
        self.engine = engine
        self.config = config or engine.config
        self._transport_factory = transport_factory
        self._transport: Transport | None = None

        self._status = SessionStatus.IDLE
        self.role: Role | None = None
        self.room_id: str | None = None
        self.connection_id: str | None = None
        self.last_error: BoardSyncError | None = None
        self._password = ""

        self._connections: dict[str, PeerConnection] = {}
        self._departed: dict[str, Player] = {}
        self._transfer: dict | None = None

        self._handshake: asyncio.Future | None = None
        self._synced = asyncio.Event()
        self._leaving = False
        self._reconnect_task: asyncio.Task | None = None
        self._timers: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()

        # Callbacks
        self._on_status: list[Callable[[SessionStatus, BoardSyncError | None], None]] = []
        self._on_peer_joined: list[Callable[[PeerConnection], None]] = []
        self._on_peer_left: list[Callable[[PeerConnection], None]] = []

        engine.bind(self.send_action, self.send_ack, self.request_snapshot)

    def add_status_callback(self, callback: Callable[[SessionStatus, BoardSyncError | None], None]) -> None:
        """Add callback for status changes."""
        self._on_status.append(callback)

    def add_peer_joined_callback(self, callback: Callable[[PeerConnection], None]) -> None:
        """Add callback for peers joining (host only)."""
        self._on_peer_joined.append(callback)

    def add_peer_left_callback(self, callback: Callable[[PeerConnection], None]) -> None:
        """Add callback for peers leaving (host only)."""
        self._on_peer_left.append(callback)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_host(self) -> bool:
        return self.role == Role.HOST

    @property
    def is_synced(self) -> bool:
        """True once the board reflects the host's state."""
        return self._synced.is_set()

    def get_connections(self) -> list[PeerConnection]:
        """Get list of connected peers (host only)."""
        return [c for c in self._connections.values() if c.open]

    def _set_status(self, status: SessionStatus, error: BoardSyncError | None = None) -> None:
        if status == self._status and error is None:
            return
        self._status = status
        logger.info(f"Session status: {status.value}")
        for callback in self._on_status:
            try:
                callback(status, error)
            except Exception as e:
                logger.error(f"Status callback error: {e}")

    def _fail(self, error: BoardSyncError) -> None:
        """Stop for good: no reconnect after this."""
        self.last_error = error
        logger.error(f"Session failed: {error.message}")
        self._stop_timers()
        transport, self._transport = self._transport, None
        if transport is not None:
            self._spawn(transport.close())
        self._set_status(SessionStatus.ERROR, error)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================================
    # Room lifecycle
    # =========================================================================

    async def create_room(self, room_id: str, password: str) -> bool:
        """
        Open a room as its host.

        Returns:
            True if the room is open
        """
        return await self._start(Role.HOST, room_id, password)

    async def join_room(self, room_id: str, password: str) -> bool:
        """
        Join an existing room as a peer.

        Returns:
            True once the relay admitted us; the snapshot follows
        """
        return await self._start(Role.PEER, room_id, password)

    async def _start(self, role: Role, room_id: str, password: str) -> bool:
        if self._status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            logger.warning("Already in a room")
            return False

        self.role = role
        self.room_id = room_id
        self._password = password
        self._leaving = False
        self.last_error = None
        self._transfer = None
        self._connections.clear()
        self.engine.set_role(role)
        self._set_status(SessionStatus.CONNECTING)

        try:
            await self._establish()
        except BoardSyncError as e:
            self._fail(e)
            return False
        return True

    async def leave(self) -> None:
        """
        Leave the room intentionally. No reconnect is attempted.

        A host with peers still connected first hands the room to the first
        of them in seating order.
        """
        self._leaving = True
        if self.role == Role.HOST and self._status == SessionStatus.CONNECTED:
            self._hand_over()
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        self._stop_timers()

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        self._connections.clear()
        self._synced.clear()
        self.connection_id = None
        self._set_status(SessionStatus.IDLE)
        logger.info(f"Left room {self.room_id}")

    def _hand_over(self) -> None:
        """Name the first connected player in seating order as the next host."""
        connected = {c.player_id for c in self.get_connections()}
        successor = next((p for p in self.engine.confirmed.players.values() if p.id in connected), None)
        if successor is None:
            return
        logger.info(f"Handing room {self.room_id} to {successor.name}")
        transfer = create_host_transfer(
            successor.id,
            self.engine.player_id,
            self.engine.snapshot(),
            self.engine.confirmed.checksum(),
        )
        self._send(create_host_message(transfer))

    async def _take_over(self, transfer: dict) -> None:
        """Reopen the room as its host after the previous host handed it to us."""
        logger.info(f"Taking over room {self.room_id}")
        self._connections.clear()
        self._set_status(SessionStatus.CONNECTING)
        self.role = Role.HOST
        self.engine.set_role(Role.HOST)
        self.engine.load_snapshot(transfer.get("snapshot", {}))

        previous = self.engine.confirmed.get_player(transfer.get("previousHostId", ""))
        if previous is not None:
            self._departed[previous.id] = copy.deepcopy(previous)
            self.engine.leave_player(previous.id)

        try:
            await self._establish()
        except AuthError as e:
            self._reconnect_task = None
            self._fail(e)
            return
        except TransportError as e:
            logger.warning(f"Could not reopen room {self.room_id}: {e.message}")
            self._connection_lost()
            return
        self._reconnect_task = None

    async def wait_until_synced(self, timeout: float = HANDSHAKE_TIMEOUT) -> bool:
        """Wait for the first snapshot after joining."""
        try:
            await asyncio.wait_for(self._synced.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _establish(self) -> None:
        """Open a channel and complete the room handshake.

        Raises TransportError or AuthError.
        """
        transport = self._transport_factory()
        transport.on_message(lambda raw: self._handle_frame(transport, raw))
        transport.on_close(lambda unexpected: self._handle_close(transport, unexpected))
        await transport.connect()

        self._transport = transport
        self._synced.clear()
        self._handshake = asyncio.get_running_loop().create_future()

        if self.role == Role.HOST:
            request = create_room_message(self.room_id, self._password)
        else:
            request = create_join_message(
                self.room_id, self._password, self.engine.player_id, self.engine.player_name
            )
        transport.send(request.to_json())

        try:
            await asyncio.wait_for(self._handshake, timeout=HANDSHAKE_TIMEOUT)
        except asyncio.TimeoutError as e:
            await self._discard(transport)
            raise TransportError(f"Timed out joining room {self.room_id}") from e
        except BoardSyncError:
            await self._discard(transport)
            raise
        finally:
            self._handshake = None

        self._on_connected()

    async def _discard(self, transport: Transport) -> None:
        if self._transport is transport:
            self._transport = None
        await transport.close()

    def _on_connected(self) -> None:
        self._set_status(SessionStatus.CONNECTED)
        if self.role == Role.HOST:
            if self.engine.confirmed.get_player(self.engine.player_id) is None:
                self.engine.join_player(self.engine.player_id, self.engine.player_name)
            self._synced.set()
            logger.info(f"Hosting room {self.room_id}")
        else:
            logger.info(f"Joined room {self.room_id}, waiting for snapshot")
        self._start_timers()

    # =========================================================================
    # Failure and reconnection
    # =========================================================================

    def _handle_close(self, transport: Transport, unexpected: bool) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._stop_timers()

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(TransportError("Connection closed during handshake"))
            return
        if self._leaving or not unexpected:
            if self._status != SessionStatus.ERROR:
                self._set_status(SessionStatus.IDLE)
            return
        self._connection_lost()

    def _connection_lost(self) -> None:
        logger.warning(f"Lost connection to room {self.room_id}")
        self._synced.clear()
        if self.role == Role.HOST:
            for connection in list(self._connections.values()):
                self._peer_left(connection)
            self._connections.clear()
        self._set_status(SessionStatus.CONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        attempts = self.config.reconnect_attempts
        for attempt in range(attempts):
            delay = self.config.backoff_delay(attempt)
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt + 1}/{attempts})")
            await asyncio.sleep(delay)
            if self._leaving:
                return
            try:
                await self._establish()
                logger.info(f"Reconnected to room {self.room_id}")
                self._reconnect_task = None
                return
            except AuthError as e:
                self._reconnect_task = None
                self._fail(e)
                return
            except TransportError as e:
                logger.warning(f"Reconnect attempt {attempt + 1} failed: {e.message}")

        self._reconnect_task = None
        self._fail(TransportError(f"Could not reconnect to room {self.room_id}", attempts=attempts))

    # =========================================================================
    # Timers
    # =========================================================================

    def _start_timers(self) -> None:
        self._stop_timers()
        loop = asyncio.get_running_loop()
        if self.role == Role.PEER:
            self._timers.append(loop.create_task(self._retry_loop()))
        if self.config.drag_interval > 0:
            self._timers.append(loop.create_task(self._drag_loop()))

    def _stop_timers(self) -> None:
        for task in self._timers:
            task.cancel()
        self._timers.clear()

    async def _retry_loop(self) -> None:
        interval = self.config.ack_timeout / 2
        while True:
            await asyncio.sleep(interval)
            if self._synced.is_set():
                self.engine.retry_pending()

    async def _drag_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.drag_interval)
            self.engine.flush_drags()

    # =========================================================================
    # Outgoing
    # =========================================================================

    def _send(self, message: SyncMessage) -> None:
        if self._transport is None:
            logger.debug(f"Not connected, dropping {message.type.value}")
            return
        self._transport.send(message.to_json())

    def _send_to(self, connection_id: str, message: SyncMessage) -> None:
        self._send(create_host_message(message, target_connection_id=connection_id))

    def send_action(self, action: Action, exclude_player_id: str | None = None) -> None:
        """Deliver an action: to every open peer (host) or to the host (peer)."""
        if self._status != SessionStatus.CONNECTED:
            logger.debug(f"Not connected, dropping {action.kind.value}")
            return

        message = create_board_action(action)
        if self.role == Role.HOST:
            for connection in self.get_connections():
                if connection.player_id != exclude_player_id:
                    self._send_to(connection.connection_id, message)
        elif self._synced.is_set():
            self._send(create_client_message(message))
        else:
            logger.debug(f"Awaiting snapshot, dropping {action.kind.value}")

    def send_ack(self, action: Action, accepted: bool, origin_player_id: str) -> None:
        """Acknowledge a durable action to the peer that sent it (host only)."""
        for connection in self.get_connections():
            if connection.player_id == origin_player_id:
                self._send_to(connection.connection_id, create_board_ack(action.actor_id, action.seq, accepted))
                return

    def request_snapshot(self, last_seq: int) -> None:
        """Ask the host to send the board again (peer only)."""
        if self.role != Role.PEER or self._status != SessionStatus.CONNECTED:
            return
        self._send(create_client_message(create_state_request(last_seq)))

    def _send_snapshot(self, connection_id: str, up_to_seq: int | None = None) -> None:
        board = self.engine.confirmed
        self._send_to(connection_id, create_board_state(self.engine.snapshot(), board.checksum(), up_to_seq))

    # =========================================================================
    # Incoming
    # =========================================================================

    def _handle_frame(self, transport: Transport, raw: str) -> None:
        if transport is not self._transport:
            return
        try:
            message = SyncMessage.from_json(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed frame: {e.message}")
            return

        handlers = {
            MessageType.ROOM_CREATED: self._handle_room_entered,
            MessageType.ROOM_JOINED: self._handle_room_entered,
            MessageType.ROOM_ERROR: self._handle_room_error,
            MessageType.ROOM_CLOSED: self._handle_room_closed,
            MessageType.ROOM_CLIENT_JOINED: self._handle_client_joined,
            MessageType.ROOM_CLIENT_LEFT: self._handle_client_left,
            MessageType.ROOM_CLIENT_MESSAGE: self._handle_client_message,
            MessageType.BOARD_STATE: self._handle_board_state,
            MessageType.BOARD_ACTION: self._handle_board_action,
            MessageType.BOARD_ACK: self._handle_board_ack,
            MessageType.JOIN_REJECTED: self._handle_join_rejected,
            MessageType.HOST_TRANSFER: self._handle_host_transfer,
        }

        handler = handlers.get(message.type)
        if handler:
            handler(message)
        else:
            logger.warning(f"Unexpected message type: {message.type.value}")

    def _handle_room_entered(self, message: SyncMessage) -> None:
        self.connection_id = message.payload.get("connectionId")
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(True)

    def _handle_room_error(self, message: SyncMessage) -> None:
        code = message.payload.get("code", "")
        text = message.payload.get("message", "") or code
        if self._handshake is None or self._handshake.done():
            logger.warning(f"Relay error: {code} {text}")
            return
        if code == "auth_failed":
            error: BoardSyncError = AuthError(text, room_id=self.room_id, reason=code)
        else:
            error = TransportError(f"{code}: {text}")
        self._handshake.set_exception(error)

    def _handle_room_closed(self, message: SyncMessage) -> None:
        logger.warning(f"Room {self.room_id} closed by relay")
        transport, self._transport = self._transport, None
        self._stop_timers()
        if transport is not None:
            self._spawn(transport.close())

        transfer, self._transfer = self._transfer, None
        if transfer is not None and transfer.get("newHostId") == self.engine.player_id:
            self._synced.clear()
            self._reconnect_task = asyncio.get_running_loop().create_task(self._take_over(transfer))
            return
        self._connection_lost()

    def _handle_host_transfer(self, message: SyncMessage) -> None:
        if self.role != Role.PEER:
            return
        self._transfer = message.payload
        new_host_id = message.payload.get("newHostId", "")
        if new_host_id == self.engine.player_id:
            logger.info("Host is leaving, taking over the room once it closes")
        else:
            logger.info(f"Host is leaving, room passes to {new_host_id[:8]}")

    def _handle_join_rejected(self, message: SyncMessage) -> None:
        code = message.payload.get("code", "")
        self._fail(
            AuthError(
                message.payload.get("message", "") or f"Join rejected: {code}",
                room_id=self.room_id,
                reason=code,
            )
        )

    # Host side

    def _handle_client_joined(self, message: SyncMessage) -> None:
        if self.role != Role.HOST:
            return
        player_id = message.payload.get("playerId", "")
        player_name = message.payload.get("playerName", "")
        connection_id = message.payload.get("connectionId", "")
        if not player_id or not connection_id:
            logger.warning("Ignoring join without player or connection id")
            return

        board = self.engine.confirmed
        holder = board.player_by_name(player_name)
        if holder is not None and holder.id != player_id:
            logger.warning(f"Rejecting {player_name}: name already taken")
            self._send_to(connection_id, create_join_rejected("name_taken", f"Name {player_name} is taken"))
            return

        # A rejoin replaces any connection the player still had
        for stale_id, stale in list(self._connections.items()):
            if stale.player_id == player_id:
                stale.open = False
                del self._connections[stale_id]

        seated = board.get_player(player_id) or self._departed.get(player_id)
        self._departed.pop(player_id, None)
        life = seated.life if seated else DEFAULT_LIFE
        damage = dict(seated.commander_damage) if seated else {}
        self.engine.join_player(player_id, player_name, life, damage)

        connection = PeerConnection(connection_id=connection_id, player_id=player_id, player_name=player_name)
        self._connections[connection_id] = connection
        self._send_snapshot(connection_id)
        logger.info(f"Peer joined: {player_name} ({player_id[:8]}...)")

        for callback in self._on_peer_joined:
            try:
                callback(connection)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _handle_client_left(self, message: SyncMessage) -> None:
        if self.role != Role.HOST:
            return
        connection = self._connections.pop(message.payload.get("connectionId", ""), None)
        if connection is None:
            return
        self._peer_left(connection)

    def _peer_left(self, connection: PeerConnection) -> None:
        connection.open = False
        player = self.engine.confirmed.get_player(connection.player_id)
        if player is not None:
            self._departed[player.id] = copy.deepcopy(player)
            self.engine.leave_player(player.id)
        logger.info(f"Peer left: {connection.player_name}")

        for callback in self._on_peer_left:
            try:
                callback(connection)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _handle_client_message(self, message: SyncMessage) -> None:
        if self.role != Role.HOST:
            return
        connection = self._connections.get(message.payload.get("connectionId", ""))
        if connection is None or not connection.open:
            logger.debug("Message from unknown connection")
            return
        try:
            inner = SyncMessage.from_dict(message.payload.get("message", {}))
            if inner.type == MessageType.BOARD_STATE_REQUEST:
                logger.info(f"Resending board to {connection.player_name}")
                self._send_snapshot(connection.connection_id, int(inner.payload.get("seq", 0)))
                return
            if inner.type != MessageType.BOARD_ACTION:
                logger.debug(f"Ignoring {inner.type.value} from {connection.player_name}")
                return
            action = Action.from_wire(inner.payload)
        except ProtocolError as e:
            logger.warning(f"Bad message from {connection.player_name}: {e.message}")
            return
        self.engine.receive_from_peer(action, connection.player_id)

    # Peer side

    def _handle_board_state(self, message: SyncMessage) -> None:
        if self.role != Role.PEER:
            return
        up_to_seq = message.payload.get("upToSeq")
        self.engine.load_snapshot(
            message.payload.get("snapshot", {}),
            up_to_seq=int(up_to_seq) if up_to_seq is not None else None,
        )
        expected = message.payload.get("checksum")
        if expected and expected != self.engine.confirmed.checksum():
            logger.warning("Snapshot checksum mismatch")
        self._synced.set()
        logger.info(f"Board synced ({len(self.engine.confirmed.cards)} cards)")

    def _handle_board_action(self, message: SyncMessage) -> None:
        if self.role != Role.PEER:
            return
        try:
            action = Action.from_wire(message.payload)
        except ProtocolError as e:
            logger.warning(f"Bad action from host: {e.message}")
            return
        self.engine.receive(action)

    def _handle_board_ack(self, message: SyncMessage) -> None:
        if self.role != Role.PEER or message.payload.get("actorId") != self.engine.player_id:
            return
        self.engine.handle_ack(int(message.payload.get("seq", 0)), bool(message.payload.get("accepted")))
