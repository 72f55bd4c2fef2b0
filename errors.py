from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    ALREADY_IN_ROOM = "AlreadyInRoomError"
    ROOM_FULL = "RoomFullError"
    NICKNAME_TAKEN = "NicknameTakenError"
    ROUTING = "RoutingError"
    RATE_LIMITED = "RateLimited"
    UNAUTHORIZED = "Unauthorized"
    INTERNAL = "InternalError"


class SessionError(Exception):
    """Base for every error that is reported back to a participant."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(f"[{self.kind.value}] {message}")

    def to_envelope(self) -> dict:
        envelope = {"type": "error", "kind": self.kind.value, "message": self.message}
        if self.details is not None:
            envelope["details"] = self.details
        return envelope


class JoinError(SessionError):
    """Errors that reject a join-request."""


class ValidationError(JoinError):
    kind = ErrorKind.VALIDATION

    def __init__(self, errors: list, message: str = "Invalid input"):
        self.errors = list(errors)
        super().__init__(message, details=self.errors)


class AlreadyInRoomError(JoinError):
    kind = ErrorKind.ALREADY_IN_ROOM

    def __init__(self, current_room: str):
        self.current_room = current_room
        super().__init__("You are already in a room", details={"currentRoom": current_room})


class RoomFullError(JoinError):
    kind = ErrorKind.ROOM_FULL

    def __init__(self, current: int, maximum: int):
        self.current = current
        self.maximum = maximum
        super().__init__("Room is full", details={"currentUsers": current, "maxUsers": maximum})


class NicknameTakenError(JoinError):
    kind = ErrorKind.NICKNAME_TAKEN

    def __init__(self, nickname: str, suggestion: str):
        self.nickname = nickname
        self.suggestion = suggestion
        super().__init__("Nickname is already taken in this room", details={"suggestion": suggestion})


class RoutingError(SessionError):
    kind = ErrorKind.ROUTING


class RateLimitedError(SessionError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded", details={"retryAfter": retry_after})


class UnauthorizedError(SessionError):
    kind = ErrorKind.UNAUTHORIZED


class InternalError(SessionError):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class InvariantViolation(RuntimeError):
    """A directory mutation would break a room invariant; nothing was changed."""
