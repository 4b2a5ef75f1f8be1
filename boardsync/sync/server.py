"""
Sync Relay

Routes frames between the host and the peers of each room. The relay knows
nothing about boards: it creates rooms, checks passwords, wraps peer frames
for the host and unwraps host frames for peers.
"""

import asyncio
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from boardsync.errors import ProtocolError
from boardsync.logging import get_logger
from boardsync.sync.protocol import (
    MessageType,
    SyncMessage,
    create_client_joined,
    create_client_left,
    create_room_closed,
    create_room_created,
    create_room_error,
    create_room_joined,
)

logger = get_logger("sync.server")


@dataclass
class RoomMember:
    """A peer connection inside a room."""

    connection_id: str
    player_id: str
    player_name: str
    joined_at: datetime = field(default_factory=datetime.now)


@dataclass
class Room:
    """A hosted room."""

    room_id: str
    password_hash: str
    host_connection_id: str
    members: dict[str, RoomMember] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)


class RelayHub:
    """
    Transport-independent room routing.

    Each connection registers a send function and gets a connection id back;
    frames are then pushed through ``handle``.
    """

    def __init__(self):
        self._rooms: dict[str, Room] = {}
        self._senders: dict[str, Callable[[str], None]] = {}
        self._membership: dict[str, str] = {}  # connection id -> room id
        self._ids = itertools.count(1)
        self.accepting = True

    def register(self, send: Callable[[str], None]) -> str:
        """Register a connection and return its id."""
        connection_id = f"conn-{next(self._ids)}"
        self._senders[connection_id] = send
        logger.debug(f"Connection registered: {connection_id}")
        return connection_id

    def unregister(self, connection_id: str) -> None:
        """Drop a connection, closing its room if it was the host."""
        self._senders.pop(connection_id, None)
        room_id = self._membership.pop(connection_id, None)
        room = self._rooms.get(room_id) if room_id else None
        if room is None:
            return

        if room.host_connection_id == connection_id:
            del self._rooms[room.room_id]
            closed = create_room_closed(room.room_id)
            for member_id in list(room.members):
                self._membership.pop(member_id, None)
                self._send(member_id, closed)
            logger.info(f"Room closed: {room.room_id}")
        elif member := room.members.pop(connection_id, None):
            self._send(room.host_connection_id, create_client_left(member.player_id, connection_id))
            logger.info(f"Player {member.player_name} left room {room.room_id}")

    def handle(self, connection_id: str, raw: str) -> None:
        """Handle one frame from a connection."""
        try:
            message = SyncMessage.from_json(raw)
        except ProtocolError as e:
            logger.warning(f"Bad frame from {connection_id}: {e}")
            self._send(connection_id, create_room_error("bad_request", str(e)))
            return

        handlers = {
            MessageType.ROOM_CREATE: self._handle_create,
            MessageType.ROOM_JOIN: self._handle_join,
            MessageType.ROOM_CLIENT_MESSAGE: self._handle_client_message,
            MessageType.ROOM_HOST_MESSAGE: self._handle_host_message,
        }

        handler = handlers.get(message.type)
        if handler:
            handler(connection_id, message)
        else:
            logger.warning(f"Unexpected message type from {connection_id}: {message.type}")
            self._send(connection_id, create_room_error("bad_request", f"Unexpected {message.type.value}"))

    def _send(self, connection_id: str, message: SyncMessage) -> None:
        send = self._senders.get(connection_id)
        if send is None:
            return
        try:
            send(message.to_json())
        except Exception as e:
            logger.error(f"Failed to send to {connection_id}: {e}")

    def _handle_create(self, connection_id: str, message: SyncMessage) -> None:
        room_id = message.payload.get("roomId", "")
        if not room_id:
            self._send(connection_id, create_room_error("bad_request", "roomId required"))
            return
        if room_id in self._rooms:
            self._send(connection_id, create_room_error("room_exists", f"Room {room_id} already exists"))
            return

        self._rooms[room_id] = Room(
            room_id=room_id,
            password_hash=message.payload.get("password", ""),
            host_connection_id=connection_id,
        )
        self._membership[connection_id] = room_id
        self._send(connection_id, create_room_created(room_id, connection_id))
        logger.info(f"Room created: {room_id}")

    def _handle_join(self, connection_id: str, message: SyncMessage) -> None:
        room_id = message.payload.get("roomId", "")
        room = self._rooms.get(room_id)
        if room is None:
            self._send(connection_id, create_room_error("room_not_found", f"No room {room_id}"))
            return
        if message.payload.get("password", "") != room.password_hash:
            logger.warning(f"Authentication failed for room {room_id}")
            self._send(connection_id, create_room_error("auth_failed", "Invalid password"))
            return

        member = RoomMember(
            connection_id=connection_id,
            player_id=message.payload.get("playerId", ""),
            player_name=message.payload.get("playerName", ""),
        )
        room.members[connection_id] = member
        self._membership[connection_id] = room_id
        self._send(connection_id, create_room_joined(room_id, connection_id))
        self._send(
            room.host_connection_id,
            create_client_joined(member.player_id, member.player_name, connection_id),
        )
        logger.info(f"Player {member.player_name} joined room {room_id}")

    def _handle_client_message(self, connection_id: str, message: SyncMessage) -> None:
        room = self._room_of(connection_id)
        if room is None or connection_id not in room.members:
            self._send(connection_id, create_room_error("not_in_room", "Join a room first"))
            return
        forwarded = SyncMessage(
            type=MessageType.ROOM_CLIENT_MESSAGE,
            payload={"connectionId": connection_id, "message": message.payload.get("message", {})},
        )
        self._send(room.host_connection_id, forwarded)

    def _handle_host_message(self, connection_id: str, message: SyncMessage) -> None:
        room = self._room_of(connection_id)
        if room is None or room.host_connection_id != connection_id:
            self._send(connection_id, create_room_error("not_host", "Only the host can broadcast"))
            return
        try:
            inner = SyncMessage.from_dict(message.payload.get("message", {}))
        except ProtocolError as e:
            self._send(connection_id, create_room_error("bad_request", str(e)))
            return

        target = message.payload.get("targetConnectionId")
        if target is not None:
            if target in room.members:
                self._send(target, inner)
            return
        for member_id in list(room.members):
            self._send(member_id, inner)

    def _room_of(self, connection_id: str) -> Room | None:
        room_id = self._membership.get(connection_id)
        return self._rooms.get(room_id) if room_id else None

    def get_rooms(self) -> list[Room]:
        """Get list of open rooms."""
        return list(self._rooms.values())

    @property
    def connection_count(self) -> int:
        return len(self._senders)


class RelayServer:
    """
    WebSocket server feeding a RelayHub.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 9910, hub: RelayHub | None = None):
        self.host = host
        self.port = port
        self.hub = hub or RelayHub()
        self._server = None
        self._running = False

        logger.info(f"RelayServer initialized on {host}:{port}")

    async def start(self) -> bool:
        """
        Start the relay server.

        Returns:
            True if started successfully
        """
        try:
            import websockets
        except ImportError:
            logger.error("websockets not installed. Install with: pip install websockets")
            return False

        if self._running:
            logger.warning("Server already running")
            return True

        try:
            self._server = await websockets.serve(self._handle_connection, self.host, self.port)
            self._running = True
            logger.info(f"Relay server started on {self.host}:{self.port}")
            return True
        except OSError as e:
            logger.error(f"Failed to start server: {e}")
            return False

    async def stop(self) -> None:
        """Stop the relay server."""
        if not self._running:
            return

        self._running = False
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Relay server stopped")

    async def serve_forever(self) -> None:
        """Run until cancelled."""
        if not await self.start():
            return
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    async def _handle_connection(self, websocket) -> None:
        """Handle a new WebSocket connection."""
        import websockets

        queue: asyncio.Queue[str] = asyncio.Queue()
        connection_id = self.hub.register(queue.put_nowait)
        writer = asyncio.create_task(self._write_loop(websocket, queue))
        try:
            async for raw in websocket:
                if isinstance(raw, bytes):
                    raw = raw.decode()
                self.hub.handle(connection_id, raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"Connection {connection_id} closed: {e}")
        finally:
            self.hub.unregister(connection_id)
            writer.cancel()

    @staticmethod
    async def _write_loop(websocket, queue: asyncio.Queue) -> None:
        import websockets

        try:
            while True:
                await websocket.send(await queue.get())
        except websockets.exceptions.ConnectionClosed:
            return

    @property
    def is_running(self) -> bool:
        """Check if server is running."""
        return self._running
