"""
Board Sync Networking

Host-authoritative replication of a board across clients in a room,
routed through a relay over WebSocket.
"""

from boardsync.sync.engine import ReplicationEngine
from boardsync.sync.protocol import MessageType, Role, SyncMessage
from boardsync.sync.server import RelayHub, RelayServer
from boardsync.sync.session import PeerConnection, SessionManager, SessionStatus
from boardsync.sync.transport import MemoryTransport, Transport, WebSocketTransport

__all__ = [
    "ReplicationEngine",
    "SessionManager",
    "SessionStatus",
    "PeerConnection",
    "Role",
    "Transport",
    "WebSocketTransport",
    "MemoryTransport",
    "RelayHub",
    "RelayServer",
    "SyncMessage",
    "MessageType",
]
