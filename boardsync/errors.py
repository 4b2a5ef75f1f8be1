"""Board Sync Error Hierarchy.

Structured exception types for the replication and session layers.
"""

from __future__ import annotations


class BoardSyncError(Exception):
    """Base error for all boardsync exceptions."""

    code = "BOARDSYNC_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Session Errors
class TransportError(BoardSyncError):
    """A channel failed to open or closed unexpectedly."""

    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message, {"attempts": attempts})
        self.attempts = attempts


class AuthError(BoardSyncError):
    """The room rejected the join request (wrong password, name taken)."""

    code = "AUTH_FAILED"

    def __init__(self, message: str, room_id: str = None, reason: str = None):
        super().__init__(message, {"room_id": room_id, "reason": reason})
        self.room_id = room_id
        self.reason = reason


class ProtocolError(BoardSyncError):
    """A wire message could not be decoded."""

    code = "PROTOCOL_ERROR"


# Replication Errors
class ReplicationError(BoardSyncError):
    """Base error for actions that cannot be applied."""

    code = "REPLICATION_ERROR"


class StaleReferenceError(ReplicationError):
    """An action targets an entity that no longer exists."""

    code = "STALE_REFERENCE"

    def __init__(self, message: str, target_id: str = None):
        super().__init__(message, {"target_id": target_id})
        self.target_id = target_id


class OwnershipViolation(ReplicationError):
    """An actor tried to mutate something it does not own."""

    code = "OWNERSHIP_VIOLATION"

    def __init__(self, message: str, actor_id: str = None, target_id: str = None):
        super().__init__(message, {"actor_id": actor_id, "target_id": target_id})
        self.actor_id = actor_id
        self.target_id = target_id


class ConfigError(BoardSyncError):
    """Configuration value is invalid."""

    code = "CONFIG_ERROR"
