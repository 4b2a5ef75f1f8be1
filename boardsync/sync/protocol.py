"""
Sync Protocol

Defines the wire envelope exchanged between clients and the relay: room
control messages handled by the relay, and board payloads that the relay
forwards untouched between host and peers.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from boardsync.board.actions import Action
from boardsync.errors import ProtocolError
from boardsync.logging import get_logger

logger = get_logger("sync.protocol")


class MessageType(Enum):
    """Types of sync messages."""

    # Room control (relay)
    ROOM_CREATE = "room:create"
    ROOM_CREATED = "room:created"
    ROOM_JOIN = "room:join"
    ROOM_JOINED = "room:joined"
    ROOM_CLIENT_JOINED = "room:client_joined"
    ROOM_CLIENT_LEFT = "room:client_left"
    ROOM_CLIENT_MESSAGE = "room:client_message"
    ROOM_HOST_MESSAGE = "room:host_message"
    ROOM_ERROR = "room:error"
    ROOM_CLOSED = "room:closed"

    # Board payloads (host <-> peer)
    BOARD_ACTION = "BOARD_ACTION"
    BOARD_STATE = "BOARD_STATE"
    BOARD_ACK = "BOARD_ACK"
    BOARD_STATE_REQUEST = "BOARD_STATE_REQUEST"
    HOST_TRANSFER = "HOST_TRANSFER"
    JOIN_REJECTED = "ROOM_ERROR"


class Role(Enum):
    """Role of a client within a room."""

    HOST = "host"
    PEER = "peer"


@dataclass
class SyncMessage:
    """A sync protocol message. ``payload`` holds every field besides ``type``."""

    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the flat wire object."""
        return {"type": self.type.value, **self.payload}

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncMessage":
        if not isinstance(data, dict):
            raise ProtocolError("Message must be a JSON object")
        body = dict(data)
        try:
            message_type = MessageType(body.pop("type"))
        except (KeyError, ValueError) as e:
            raise ProtocolError(f"Unknown message type: {data.get('type')!r}") from e
        return cls(type=message_type, payload=body)

    @classmethod
    def from_json(cls, data: str) -> "SyncMessage":
        """Deserialize from JSON string."""
        try:
            parsed = json.loads(data)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
        return cls.from_dict(parsed)


def hash_password(password: str) -> str:
    """Passwords never travel in clear text."""
    return hashlib.sha256(password.encode()).hexdigest()


# Message factory functions for room control


def create_room_message(room_id: str, password: str) -> SyncMessage:
    """Create a room creation request."""
    return SyncMessage(
        type=MessageType.ROOM_CREATE,
        payload={"roomId": room_id, "password": hash_password(password)},
    )


def create_room_created(room_id: str, connection_id: str) -> SyncMessage:
    return SyncMessage(
        type=MessageType.ROOM_CREATED,
        payload={"roomId": room_id, "connectionId": connection_id},
    )


def create_join_message(room_id: str, password: str, player_id: str, player_name: str) -> SyncMessage:
    """Create a room join request."""
    return SyncMessage(
        type=MessageType.ROOM_JOIN,
        payload={
            "roomId": room_id,
            "password": hash_password(password),
            "playerId": player_id,
            "playerName": player_name,
        },
    )


def create_room_joined(room_id: str, connection_id: str) -> SyncMessage:
    return SyncMessage(
        type=MessageType.ROOM_JOINED,
        payload={"roomId": room_id, "connectionId": connection_id},
    )


def create_client_joined(player_id: str, player_name: str, connection_id: str) -> SyncMessage:
    return SyncMessage(
        type=MessageType.ROOM_CLIENT_JOINED,
        payload={"playerId": player_id, "playerName": player_name, "connectionId": connection_id},
    )


def create_client_left(player_id: str, connection_id: str) -> SyncMessage:
    return SyncMessage(
        type=MessageType.ROOM_CLIENT_LEFT,
        payload={"playerId": player_id, "connectionId": connection_id},
    )


def create_client_message(message: SyncMessage, connection_id: str | None = None) -> SyncMessage:
    """Wrap a peer message for the host. The relay fills in ``connectionId``."""
    payload: dict[str, Any] = {"message": message.to_dict()}
    if connection_id is not None:
        payload["connectionId"] = connection_id
    return SyncMessage(type=MessageType.ROOM_CLIENT_MESSAGE, payload=payload)


def create_host_message(message: SyncMessage, target_connection_id: str | None = None) -> SyncMessage:
    """Wrap a host message for one peer, or every peer when no target is given."""
    payload: dict[str, Any] = {"message": message.to_dict()}
    if target_connection_id is not None:
        payload["targetConnectionId"] = target_connection_id
    return SyncMessage(type=MessageType.ROOM_HOST_MESSAGE, payload=payload)


def create_room_error(code: str, message: str = "") -> SyncMessage:
    """Create a relay error message."""
    return SyncMessage(type=MessageType.ROOM_ERROR, payload={"code": code, "message": message})


def create_room_closed(room_id: str) -> SyncMessage:
    return SyncMessage(type=MessageType.ROOM_CLOSED, payload={"roomId": room_id})


# Message factory functions for board payloads


def create_board_action(action: Action) -> SyncMessage:
    """Create an action message."""
    return SyncMessage(type=MessageType.BOARD_ACTION, payload=action.to_wire())


def create_board_state(snapshot: dict[str, Any], checksum: str, up_to_seq: int | None = None) -> SyncMessage:
    """Create a full snapshot message. ``up_to_seq`` answers a state request."""
    payload: dict[str, Any] = {"snapshot": snapshot, "checksum": checksum}
    if up_to_seq is not None:
        payload["upToSeq"] = up_to_seq
    return SyncMessage(type=MessageType.BOARD_STATE, payload=payload)


def create_board_ack(actor_id: str, seq: int, accepted: bool) -> SyncMessage:
    """Create an acknowledgment for a durable action."""
    return SyncMessage(
        type=MessageType.BOARD_ACK,
        payload={"actorId": actor_id, "seq": seq, "accepted": accepted},
    )


def create_join_rejected(code: str, message: str = "") -> SyncMessage:
    """Create a host-side join rejection."""
    return SyncMessage(type=MessageType.JOIN_REJECTED, payload={"code": code, "message": message})


def create_state_request(seq: int) -> SyncMessage:
    """Ask the host for a fresh snapshot. ``seq`` is the last seq the peer has sent."""
    return SyncMessage(type=MessageType.BOARD_STATE_REQUEST, payload={"seq": seq})


def create_host_transfer(
    new_host_id: str,
    previous_host_id: str,
    snapshot: dict[str, Any],
    checksum: str,
) -> SyncMessage:
    """Hand the room to another player. Sent by a host that is leaving."""
    return SyncMessage(
        type=MessageType.HOST_TRANSFER,
        payload={
            "newHostId": new_host_id,
            "previousHostId": previous_host_id,
            "snapshot": snapshot,
            "checksum": checksum,
        },
    )
