"""Error kinds for nettap.

Every error is isolated to the request, session, or coordination attempt that
caused it. None of these ever propagates into the instrumented application.

PUBLIC API:
  - NettapError: Base class
  - CaptureError: Malformed or unexpected lifecycle signal
  - DuplicateCorrelationId: Start for a correlation id that is still open
  - DecodeError: Body decompression or charset failure
  - TransportError: Bad inbound command, answered with a protocol error
  - ErrorCode: Protocol error codes used by TransportError
  - CoordinationError: Lost a bind race or ambiguous liveness result
  - IPCError: Follower to leader channel broken
"""

__all__ = [
    "NettapError",
    "CaptureError",
    "DuplicateCorrelationId",
    "DecodeError",
    "TransportError",
    "ErrorCode",
    "CoordinationError",
    "IPCError",
]


class NettapError(Exception):
    """Base class for all nettap errors."""


class CaptureError(NettapError):
    """Lifecycle signal that cannot be applied. Dropped and counted."""

    def __init__(self, correlation_id: str, message: str):
        super().__init__(f"{message} (correlation id {correlation_id!r})")
        self.correlation_id = correlation_id


class DuplicateCorrelationId(CaptureError):
    """Start received while a request with the same correlation id is open."""

    def __init__(self, correlation_id: str):
        super().__init__(correlation_id, "Superseded by a new request with the same correlation id")


class DecodeError(NettapError):
    """Body could not be decompressed or converted to text."""


class ErrorCode:
    """JSON-RPC style error codes carried in protocol error replies."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    SERVER_ERROR = -32000


class TransportError(NettapError):
    """Inbound command failure answered with a protocol-level error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class CoordinationError(NettapError):
    """Election attempt failed. Retried with backoff, never fatal."""


class IPCError(NettapError):
    """Follower link to the leader is broken. Triggers re-election."""
