"""
Error types shared across upskeeper.

Every failure raised by the core carries an ErrorKind so that transports
(API, CLI) can map it without knowing the concrete exception class.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Coarse error categories surfaced to callers."""
    INVALID_ARGUMENT = "invalid_argument"
    IO = "io"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    STATE = "state"


class UpsKeeperError(Exception):
    """Base exception for upskeeper errors."""

    kind: ErrorKind = ErrorKind.IO

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "detail": self.message}


class InvalidArgumentError(UpsKeeperError):
    """Malformed input such as a bad timestamp or UPS name."""
    kind = ErrorKind.INVALID_ARGUMENT


class IOFailureError(UpsKeeperError):
    """Socket, file-system or process-spawn failure."""
    kind = ErrorKind.IO


class OperationTimeoutError(UpsKeeperError):
    """A connect, read or response deadline was exceeded."""
    kind = ErrorKind.TIMEOUT


class ProtocolError(UpsKeeperError):
    """The peer answered with ERR or an unexpected line."""
    kind = ErrorKind.PROTOCOL


class ConfigValidationError(UpsKeeperError):
    """Configuration failed schema or cross-field validation."""
    kind = ErrorKind.VALIDATION


class StateError(UpsKeeperError):
    """Operation invoked in an invalid lifecycle state."""
    kind = ErrorKind.STATE
