"""
Tests for the relay hub and server.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from boardsync.sync.protocol import (
    SyncMessage,
    create_board_ack,
    create_client_message,
    create_host_message,
    create_join_message,
    create_room_message,
)
from boardsync.sync.server import RelayHub, RelayServer


class Inbox:
    """Collects frames sent to one connection."""

    def __init__(self, hub: RelayHub):
        self.frames: list[dict] = []
        self.connection_id = hub.register(lambda raw: self.frames.append(json.loads(raw)))

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]

    @property
    def last(self) -> dict:
        return self.frames[-1]


@pytest.fixture
def hub():
    return RelayHub()


@pytest.fixture
def room(hub):
    host = Inbox(hub)
    hub.handle(host.connection_id, create_room_message("r1", "pw").to_json())
    peer = Inbox(hub)
    hub.handle(peer.connection_id, create_join_message("r1", "pw", "p1", "Alice").to_json())
    return hub, host, peer


class TestRooms:
    """Tests for room creation and joining."""

    def test_create(self, hub):
        host = Inbox(hub)
        hub.handle(host.connection_id, create_room_message("r1", "pw").to_json())
        assert host.last == {"type": "room:created", "roomId": "r1", "connectionId": host.connection_id}
        assert [r.room_id for r in hub.get_rooms()] == ["r1"]

    def test_duplicate_room(self, hub):
        first, second = Inbox(hub), Inbox(hub)
        hub.handle(first.connection_id, create_room_message("r1", "pw").to_json())
        hub.handle(second.connection_id, create_room_message("r1", "pw").to_json())
        assert second.last["code"] == "room_exists"

    def test_join_notifies_host(self, room):
        hub, host, peer = room
        assert peer.last == {"type": "room:joined", "roomId": "r1", "connectionId": peer.connection_id}
        assert host.last == {
            "type": "room:client_joined",
            "playerId": "p1",
            "playerName": "Alice",
            "connectionId": peer.connection_id,
        }

    def test_wrong_password(self, room):
        hub, host, _ = room
        intruder = Inbox(hub)
        hub.handle(intruder.connection_id, create_join_message("r1", "nope", "p2", "Eve").to_json())
        assert intruder.last["code"] == "auth_failed"
        assert host.types().count("room:client_joined") == 1

    def test_unknown_room(self, hub):
        peer = Inbox(hub)
        hub.handle(peer.connection_id, create_join_message("nope", "pw", "p1", "Alice").to_json())
        assert peer.last == {"type": "room:error", "code": "room_not_found", "message": "No room nope"}

    @pytest.mark.parametrize("raw", ["{{", '{"type": "BOARD_STATE"}', '{"type": "room:create"}'])
    def test_bad_requests(self, hub, raw):
        conn = Inbox(hub)
        hub.handle(conn.connection_id, raw)
        assert conn.last["type"] == "room:error"
        assert conn.last["code"] == "bad_request"


class TestForwarding:
    """Tests for wrapping and unwrapping board traffic."""

    def test_client_message_reaches_host(self, room):
        hub, host, peer = room
        inner = create_board_ack("p1", 1, True)
        hub.handle(peer.connection_id, create_client_message(inner).to_json())
        assert host.last == {
            "type": "room:client_message",
            "connectionId": peer.connection_id,
            "message": inner.to_dict(),
        }

    def test_client_message_outside_room(self, hub):
        loner = Inbox(hub)
        hub.handle(loner.connection_id, create_client_message(create_board_ack("x", 1, True)).to_json())
        assert loner.last["code"] == "not_in_room"

    def test_host_message_targeted(self, room):
        hub, host, peer = room
        other = Inbox(hub)
        hub.handle(other.connection_id, create_join_message("r1", "pw", "p2", "Bob").to_json())

        inner = create_board_ack("p1", 2, False)
        hub.handle(host.connection_id, create_host_message(inner, peer.connection_id).to_json())
        assert peer.last == inner.to_dict()
        assert other.last["type"] == "room:joined"

    def test_host_message_broadcast(self, room):
        hub, host, peer = room
        other = Inbox(hub)
        hub.handle(other.connection_id, create_join_message("r1", "pw", "p2", "Bob").to_json())

        inner = create_board_ack("p1", 3, True)
        hub.handle(host.connection_id, create_host_message(inner).to_json())
        assert peer.last == other.last == inner.to_dict()

    def test_only_host_may_broadcast(self, room):
        hub, _, peer = room
        hub.handle(peer.connection_id, create_host_message(create_board_ack("p1", 1, True)).to_json())
        assert peer.last["code"] == "not_host"


class TestDisconnects:
    """Tests for connections going away."""

    def test_peer_leaving(self, room):
        hub, host, peer = room
        hub.unregister(peer.connection_id)
        assert host.last == {"type": "room:client_left", "playerId": "p1", "connectionId": peer.connection_id}
        assert hub.connection_count == 1

    def test_host_leaving_closes_room(self, room):
        hub, host, peer = room
        hub.unregister(host.connection_id)
        assert peer.last == {"type": "room:closed", "roomId": "r1"}
        assert hub.get_rooms() == []

        hub.handle(peer.connection_id, create_client_message(create_board_ack("p1", 1, True)).to_json())
        assert peer.last["code"] == "not_in_room"

    def test_failing_sender_is_logged(self, hub):
        def broken(raw):
            raise ConnectionError("gone")

        connection_id = hub.register(broken)
        hub.handle(connection_id, create_room_message("r1", "pw").to_json())
        assert [r.room_id for r in hub.get_rooms()] == ["r1"]


class TestRelayServer:
    """Tests for the WebSocket front end."""

    def test_start_and_stop(self):
        async def run():
            mock_ws = MagicMock()
            mock_server = MagicMock()
            mock_server.wait_closed = AsyncMock()
            mock_ws.serve = AsyncMock(return_value=mock_server)

            with patch.dict("sys.modules", {"websockets": mock_ws}):
                server = RelayServer(host="127.0.0.1", port=9999)
                assert await server.start() is True
                assert server.is_running
                mock_ws.serve.assert_awaited_once_with(server._handle_connection, "127.0.0.1", 9999)

                await server.stop()
                assert not server.is_running
                mock_server.close.assert_called_once()

        asyncio.run(run())

    def test_start_failure(self):
        async def run():
            mock_ws = MagicMock()
            mock_ws.serve = AsyncMock(side_effect=OSError("address in use"))
            with patch.dict("sys.modules", {"websockets": mock_ws}):
                server = RelayServer(port=9999)
                assert await server.start() is False
                assert not server.is_running

        asyncio.run(run())

    def test_connection_feeds_hub(self):
        async def run():
            class ConnectionClosed(Exception):
                pass

            mock_ws = MagicMock()
            mock_ws.exceptions.ConnectionClosed = ConnectionClosed

            class FakeSocket:
                def __init__(self, frames):
                    self._frames = list(frames)
                    self.sent = []

                def __aiter__(self):
                    return self

                async def __anext__(self):
                    await asyncio.sleep(0)
                    if not self._frames:
                        raise StopAsyncIteration
                    return self._frames.pop(0)

                async def send(self, raw):
                    self.sent.append(json.loads(raw))

            hub = RelayHub()
            server = RelayServer(hub=hub)
            socket = FakeSocket([create_room_message("r1", "pw").to_json().encode()])
            with patch.dict("sys.modules", {"websockets": mock_ws}):
                await server._handle_connection(socket)

            assert hub.get_rooms() == []
            assert hub.connection_count == 0
            assert SyncMessage.from_dict(socket.sent[0]).payload["roomId"] == "r1"

        asyncio.run(run())
