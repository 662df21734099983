"""Per-process store of in-flight and recently completed requests.

All mutation happens on the owning event loop, so nothing here locks.

PUBLIC API:
  - RequestDetail: Correlated record for one network operation
  - RequestDelta: One applied state transition, fed to the translator
  - RequestRegistry: Ingests CaptureEvents, owns RequestDetails, evicts
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from nettap.body import BodyDecoder, DecodedBody, parse_content_type
from nettap.errors import CaptureError, DecodeError, DuplicateCorrelationId
from nettap.generate import generate_id
from nettap.headers import Headers, header_value, normalize_headers
from nettap.types import CaptureEvent, CaptureKind, RequestState

__all__ = ["RequestDetail", "RequestDelta", "RequestRegistry"]

logger = logging.getLogger(__name__)

_EVICTED_OPEN = "Evicted before completion"


class RequestDetail:
    """Everything known about one network operation.

    The id is assigned once at construction and never changes. State only moves
    forward; see RequestState.
    """

    def __init__(self, correlation_id: str, origin: int, start_time: float):
        self.id = generate_id()
        self.correlation_id = correlation_id
        self.origin = origin
        self.state = RequestState.PENDING

        # Request side
        self.method = "GET"
        self.url = ""
        self.request_headers: Headers = []
        self.request_body: bytes | None = None
        self.request_body_truncated = False
        self.call_frames: list[dict] = []

        # Timeline (fractional epoch seconds)
        self.start_time = start_time
        self.headers_sent_time: float | None = None
        self.response_time: float | None = None
        self.end_time: float | None = None

        # Response side
        self.status: int | None = None
        self.status_text = ""
        self.http_version = "HTTP/1.1"
        self.response_headers: Headers = []
        self.content_encoding: str | None = None
        self.mime_type = ""
        self.charset: str | None = None
        self.chunks: list[bytes] = []
        self.encoded_length = 0
        self.buffered_length = 0
        self.truncated = False

        # Terminal
        self.error: str | None = None
        self.canceled = False
        self.settled = asyncio.Event()

        self._decoded: DecodedBody | None = None
        self._decode_error: DecodeError | None = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def advance(self, state: RequestState) -> None:
        """Move to ``state``. Raises ValueError on regression."""
        if state.rank <= self.state.rank:
            raise ValueError(f"Cannot move from {self.state.value} to {state.value}")
        self.state = state
        if state.terminal:
            self.settled.set()

    def cached_body(self) -> DecodedBody | None:
        """Cached decode outcome, or None if the body still needs decoding.

        Raises:
            DecodeError: Body is unavailable (failed, truncated, or undecodable).
        """
        if self._decoded is not None:
            return self._decoded
        if self._decode_error is not None:
            raise self._decode_error
        if self.state != RequestState.COMPLETED:
            raise DecodeError(f"Body unavailable for {self.state.value.lower()} request")
        if self.truncated and self.content_encoding:
            self._decode_error = DecodeError("Body was truncated before decoding")
            raise self._decode_error
        return None

    def cache_decoded(self, body: DecodedBody | None = None, error: DecodeError | None = None) -> None:
        """Record the outcome of decoding this body. Only call on the service loop."""
        if error is not None:
            logger.debug(f"Body decode failed for {self.id}: {error}")
        self._decoded, self._decode_error = body, error

    def decoded_body(self, decoder: BodyDecoder) -> DecodedBody:
        """Decode the response body once and cache the outcome.

        Raises:
            DecodeError: Body is unavailable (failed, truncated, or undecodable).
        """
        cached = self.cached_body()
        if cached is not None:
            return cached
        try:
            body = decoder.decode(self.chunks, self.content_encoding, self.charset, self.mime_type)
        except DecodeError as e:
            self.cache_decoded(error=e)
            raise
        self.cache_decoded(body)
        return body

    def summary(self) -> dict:
        """Small dict for status endpoints and logs."""
        return {
            "id": self.id,
            "method": self.method,
            "url": self.url,
            "status": self.status,
            "state": self.state.value,
            "size": self.encoded_length,
        }


@dataclass
class RequestDelta:
    """One transition applied to a RequestDetail."""

    detail: RequestDetail
    kind: CaptureKind
    timestamp: float
    chunk_length: int = 0


@dataclass
class _Counters:
    ingested: int = 0
    dropped: int = 0
    duplicates: int = 0
    evicted: int = 0


def _body_bytes(value: Any) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


_FRAME_KEYS = ("functionName", "scriptId", "url", "lineNumber", "columnNumber")


def _call_frames(value: Any) -> list[dict]:
    """Keep well-formed call frames from a Start payload, drop the rest."""
    if not isinstance(value, list):
        return []
    frames = []
    for frame in value:
        if isinstance(frame, dict) and isinstance(frame.get("url"), str):
            frames.append({key: frame[key] for key in _FRAME_KEYS if key in frame})
    return frames


class RequestRegistry:
    """Builds RequestDetails from CaptureEvents and bounds their lifetime.

    Attributes:
        max_body_size: Bytes buffered per body before truncation.
        retention_count: Max records kept (terminal ones evicted first).
        retention_age: Seconds a terminal record is kept after it ends.
    """

    def __init__(
        self,
        max_body_size: int = 10 * 1024 * 1024,
        retention_count: int = 1000,
        retention_age: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_body_size = max_body_size
        self.retention_count = retention_count
        self.retention_age = retention_age
        self._clock = clock

        # request id -> detail, insertion (start) order
        self._details: OrderedDict[str, RequestDetail] = OrderedDict()
        # (origin, correlation id) -> request id of the latest detail
        self._correlations: dict[tuple[int, str], str] = {}
        self.counters = _Counters()

    def __len__(self) -> int:
        return len(self._details)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._details

    def get(self, request_id: str) -> RequestDetail | None:
        return self._details.get(request_id)

    def find(self, correlation_id: str, origin: int) -> RequestDetail | None:
        """Latest detail for a correlation id from ``origin``."""
        request_id = self._correlations.get((origin, correlation_id))
        return self._details.get(request_id) if request_id else None

    def details(self) -> list[RequestDetail]:
        return list(self._details.values())

    @property
    def open_count(self) -> int:
        return sum(1 for d in self._details.values() if not d.terminal)

    def ingest(self, event: CaptureEvent) -> list[RequestDelta]:
        """Apply one CaptureEvent.

        Malformed or misdirected events are dropped and counted, never raised.

        Returns:
            Deltas in the order the translator must see them. Empty when the
            event was dropped.
        """
        try:
            deltas = self._apply(event)
        except CaptureError as e:
            self.counters.dropped += 1
            logger.debug(f"Dropped {event.kind.value}: {e}")
            return []
        except (KeyError, TypeError, ValueError) as e:
            self.counters.dropped += 1
            logger.warning(f"Dropped malformed {event.kind.value} for {event.correlation_id!r}: {e}")
            return []
        self.counters.ingested += 1
        return deltas

    def _apply(self, event: CaptureEvent) -> list[RequestDelta]:
        if event.kind == CaptureKind.START:
            return self._start(event)

        detail = self.find(event.correlation_id, event.origin)
        if detail is None:
            raise CaptureError(event.correlation_id, f"{event.kind.value} for unknown request")
        if detail.terminal:
            raise CaptureError(event.correlation_id, f"{event.kind.value} for {detail.state.value.lower()} request")

        match event.kind:
            case CaptureKind.HEADERS_SENT:
                return self._headers_sent(detail, event)
            case CaptureKind.RESPONSE_HEADERS:
                return self._response_headers(detail, event)
            case CaptureKind.DATA_CHUNK:
                return self._data_chunk(detail, event)
            case CaptureKind.END:
                return self._end(detail, event)
            case CaptureKind.ERROR:
                return self._error(detail, event)
        raise CaptureError(event.correlation_id, f"Unknown capture kind {event.kind!r}")

    def _start(self, event: CaptureEvent) -> list[RequestDelta]:
        deltas = []
        stale = self.find(event.correlation_id, event.origin)
        if stale is not None and not stale.terminal:
            duplicate = DuplicateCorrelationId(event.correlation_id)
            self.counters.duplicates += 1
            logger.warning(f"{duplicate}; discarding request {stale.id}")
            deltas.extend(self._fail(stale, event.timestamp, str(duplicate)))

        payload = event.payload
        detail = RequestDetail(event.correlation_id, event.origin, event.timestamp)
        detail.method = str(payload.get("method") or "GET").upper()
        detail.url = str(payload.get("url") or "")
        detail.request_headers = normalize_headers(payload.get("headers"))
        self._set_request_body(detail, payload.get("body"))
        detail.call_frames = _call_frames(payload.get("stack"))

        self._details[detail.id] = detail
        self._correlations[(event.origin, event.correlation_id)] = detail.id
        deltas.append(RequestDelta(detail, CaptureKind.START, event.timestamp))
        return deltas

    def _set_request_body(self, detail: RequestDetail, body: Any) -> None:
        data = _body_bytes(body)
        if data is None:
            return
        if len(data) > self.max_body_size:
            data = data[: self.max_body_size]
            detail.request_body_truncated = True
        detail.request_body = data

    def _headers_sent(self, detail: RequestDetail, event: CaptureEvent) -> list[RequestDelta]:
        if detail.state != RequestState.PENDING:
            raise CaptureError(event.correlation_id, "HeadersSent after response started")
        if event.payload.get("headers") is not None:
            detail.request_headers = normalize_headers(event.payload["headers"])
        if "body" in event.payload:
            self._set_request_body(detail, event.payload["body"])
        detail.headers_sent_time = event.timestamp
        detail.advance(RequestState.HEADERS_SENT)
        return [RequestDelta(detail, CaptureKind.HEADERS_SENT, event.timestamp)]

    def _response_headers(self, detail: RequestDetail, event: CaptureEvent) -> list[RequestDelta]:
        if detail.state == RequestState.RESPONSE_RECEIVED:
            raise CaptureError(event.correlation_id, "Duplicate ResponseHeaders")
        payload = event.payload
        detail.status = int(payload["status"])
        detail.status_text = str(payload.get("status_text") or "")
        detail.http_version = str(payload.get("http_version") or "HTTP/1.1")
        detail.response_headers = normalize_headers(payload.get("headers"))

        encoding = header_value(detail.response_headers, "content-encoding")
        detail.content_encoding = str(encoding) if encoding else None
        detail.mime_type, detail.charset = parse_content_type(header_value(detail.response_headers, "content-type"))

        detail.response_time = event.timestamp
        detail.advance(RequestState.RESPONSE_RECEIVED)
        return [RequestDelta(detail, CaptureKind.RESPONSE_HEADERS, event.timestamp)]

    def _data_chunk(self, detail: RequestDetail, event: CaptureEvent) -> list[RequestDelta]:
        if detail.state != RequestState.RESPONSE_RECEIVED:
            raise CaptureError(event.correlation_id, "DataChunk before ResponseHeaders")
        data = _body_bytes(event.payload.get("data")) or b""
        chunk_length = len(data)

        detail.encoded_length += chunk_length
        room = self.max_body_size - detail.buffered_length
        if len(data) > room:
            detail.truncated = True
            data = data[: max(room, 0)]
        if data:
            detail.chunks.append(data)
            detail.buffered_length += len(data)
        return [RequestDelta(detail, CaptureKind.DATA_CHUNK, event.timestamp, chunk_length=chunk_length)]

    def _end(self, detail: RequestDetail, event: CaptureEvent) -> list[RequestDelta]:
        detail.end_time = event.timestamp
        detail.advance(RequestState.COMPLETED)
        return [RequestDelta(detail, CaptureKind.END, event.timestamp)]

    def _error(self, detail: RequestDetail, event: CaptureEvent) -> list[RequestDelta]:
        detail.canceled = bool(event.payload.get("canceled", False))
        return self._fail(detail, event.timestamp, str(event.payload.get("error") or "Request failed"))

    def _fail(self, detail: RequestDetail, timestamp: float, error: str) -> list[RequestDelta]:
        detail.error = error
        detail.end_time = timestamp
        detail.advance(RequestState.FAILED)
        return [RequestDelta(detail, CaptureKind.ERROR, timestamp)]

    def sweep(self, now: float | None = None) -> tuple[list[RequestDelta], list[str]]:
        """Evict expired and excess records.

        Terminal records older than ``retention_age`` go first, then the oldest
        terminal records beyond ``retention_count``. If open records alone still
        exceed the bound, the oldest are failed and evicted so memory stays
        bounded even when a capture source leaks requests.

        Returns:
            (deltas for open records failed by eviction, evicted request ids)
        """
        now = self._clock() if now is None else now
        evicted: list[str] = []
        deltas: list[RequestDelta] = []

        for request_id, detail in list(self._details.items()):
            if detail.terminal and detail.end_time is not None and now - detail.end_time > self.retention_age:
                evicted.append(request_id)
        for request_id in evicted:
            self._remove(request_id)

        excess = len(self._details) - self.retention_count
        if excess > 0:
            for request_id, detail in list(self._details.items()):
                if excess <= 0:
                    break
                if detail.terminal:
                    self._remove(request_id)
                    evicted.append(request_id)
                    excess -= 1

        if excess > 0:
            for request_id, detail in list(self._details.items()):
                if excess <= 0:
                    break
                deltas.extend(self._fail(detail, now, _EVICTED_OPEN))
                self._remove(request_id)
                evicted.append(request_id)
                excess -= 1

        if evicted:
            self.counters.evicted += len(evicted)
            logger.debug(f"Evicted {len(evicted)} requests, {len(self._details)} retained")
        return deltas, evicted

    def _remove(self, request_id: str) -> None:
        detail = self._details.pop(request_id, None)
        if detail is None:
            return
        key = (detail.origin, detail.correlation_id)
        if self._correlations.get(key) == request_id:
            del self._correlations[key]

    def clear(self) -> list[str]:
        """Drop every record. Returns the removed ids."""
        ids = list(self._details)
        self._details.clear()
        self._correlations.clear()
        return ids

    def stats(self) -> dict:
        return {
            "retained": len(self._details),
            "open": self.open_count,
            "ingested": self.counters.ingested,
            "dropped": self.counters.dropped,
            "duplicates": self.counters.duplicates,
            "evicted": self.counters.evicted,
        }
