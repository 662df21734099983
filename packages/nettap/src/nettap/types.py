"""Shared record types for nettap.

PUBLIC API:
  - CaptureKind: Lifecycle signal kinds emitted by capture hooks
  - CaptureEvent: One raw lifecycle signal for one network operation
  - RequestState: Forward-only state of a RequestDetail
  - Role: Coordination role of the current process
  - LeaderLease: Which process owns the debug server port
"""

import base64
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from nettap.headers import Headers, normalize_headers

__all__ = ["CaptureKind", "CaptureEvent", "RequestState", "Role", "LeaderLease", "Headers"]


class CaptureKind(str, Enum):
    """Lifecycle signal kinds, in the order a healthy operation produces them."""

    START = "Start"
    HEADERS_SENT = "HeadersSent"
    RESPONSE_HEADERS = "ResponseHeaders"
    DATA_CHUNK = "DataChunk"
    END = "End"
    ERROR = "Error"


class RequestState(str, Enum):
    """RequestDetail state. Only advances forward."""

    PENDING = "Pending"
    HEADERS_SENT = "HeadersSent"
    RESPONSE_RECEIVED = "ResponseReceived"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED)


_STATE_RANK = {
    RequestState.PENDING: 0,
    RequestState.HEADERS_SENT: 1,
    RequestState.RESPONSE_RECEIVED: 2,
    RequestState.COMPLETED: 3,
    RequestState.FAILED: 3,
}


class Role(str, Enum):
    """Coordination role of a process."""

    UNKNOWN = "unknown"
    PROBING = "probing"
    LEADER = "leader"
    FOLLOWER = "follower"
    STOPPED = "stopped"


@dataclass
class CaptureEvent:
    """One raw lifecycle signal produced by a capture hook.

    Payload keys by kind:
        Start: method, url, headers, body (optional)
        HeadersSent: headers (optional), body (optional)
        ResponseHeaders: status, status_text (optional), headers, http_version (optional)
        DataChunk: data (bytes)
        End: nothing
        Error: error (str), canceled (optional bool)
    """

    correlation_id: str
    kind: CaptureKind
    timestamp: float = field(default_factory=time.time)
    payload: dict[str, Any] = field(default_factory=dict)
    origin: int = field(default_factory=os.getpid)

    def to_dict(self) -> dict:
        """Serialize to a JSON-safe dict (bytes become base64)."""
        payload = {}
        for key, value in self.payload.items():
            if isinstance(value, (bytes, bytearray, memoryview)):
                payload[key] = {"$b64": base64.b64encode(bytes(value)).decode("ascii")}
            elif key == "headers" and value is not None:
                payload[key] = [[name, val] for name, val in normalize_headers(value)]
            else:
                payload[key] = value
        return {
            "correlationId": self.correlation_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "payload": payload,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureEvent":
        """Rebuild a CaptureEvent from to_dict() output.

        Raises:
            KeyError, ValueError: If the record is malformed.
        """
        payload = {}
        for key, value in (data.get("payload") or {}).items():
            if isinstance(value, dict) and "$b64" in value:
                payload[key] = base64.b64decode(value["$b64"])
            elif key == "headers" and isinstance(value, list):
                payload[key] = [tuple(pair) for pair in value]
            else:
                payload[key] = value
        return cls(
            correlation_id=str(data["correlationId"]),
            kind=CaptureKind(data["kind"]),
            timestamp=float(data.get("timestamp") or time.time()),
            payload=payload,
            origin=int(data.get("origin") or 0),
        )


@dataclass(frozen=True)
class LeaderLease:
    """Process-wide record of the current debug server owner."""

    port: int
    owner_pid: int
    acquired_at: float

    def to_dict(self) -> dict:
        return {"port": self.port, "ownerPid": self.owner_pid, "acquiredAt": self.acquired_at}

    @classmethod
    def from_dict(cls, data: dict) -> "LeaderLease":
        return cls(port=int(data["port"]), owner_pid=int(data["ownerPid"]), acquired_at=float(data["acquiredAt"]))
