"""Translate RequestDetail transitions into Network-domain wire events.

PUBLIC API:
  - WireEvent: One protocol notification for one request
  - ProtocolTranslator: RequestDelta -> ordered WireEvents
  - EventLog: Sequenced log of WireEvents that sessions read from
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from urllib.parse import urlsplit

from nettap.headers import format_headers_to_header_text, headers_to_object
from nettap.registry import RequestDelta, RequestDetail
from nettap.types import CaptureKind

__all__ = ["WireEvent", "ProtocolTranslator", "EventLog"]

RESOURCE_TYPE = "Fetch"


@dataclass
class WireEvent:
    """Network-domain notification tied to one request."""

    method: str
    params: dict
    request_id: str
    seq: int = 0

    def to_message(self) -> dict:
        return {"method": self.method, "params": self.params}


@dataclass
class _Progress:
    started: bool = False
    responded: bool = False
    finished: bool = False


def _protocol_name(http_version: str) -> str:
    version = http_version.lower()
    if version in ("http/2", "http/2.0", "h2"):
        return "h2"
    if version in ("http/3", "h3"):
        return "h3"
    return version


def _request_line(detail: RequestDetail) -> str:
    parts = urlsplit(detail.url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return f"{detail.method} {path} {detail.http_version}\r\n"


def _status_line(detail: RequestDetail) -> str:
    return f"{detail.http_version} {detail.status} {detail.status_text}\r\n"


def _initiator(detail: RequestDetail) -> dict:
    if not detail.call_frames:
        return {"type": "other"}
    return {"type": "script", "stack": {"callFrames": detail.call_frames}}


class ProtocolTranslator:
    """Emits WireEvents in causal order per request.

    requestWillBeSent -> responseReceived? -> dataReceived* -> exactly one of
    loadingFinished / loadingFailed. Deltas that would break that order
    (nothing started yet, data before response, anything after the terminal
    event) produce nothing.
    """

    def __init__(self):
        self._progress: dict[str, _Progress] = {}

    def translate(self, delta: RequestDelta) -> list[WireEvent]:
        detail = delta.detail
        progress = self._progress.setdefault(detail.id, _Progress())
        if progress.finished:
            return []

        match delta.kind:
            case CaptureKind.START:
                if progress.started:
                    return []
                progress.started = True
                return [self._request_will_be_sent(detail, delta.timestamp)]
            case CaptureKind.HEADERS_SENT:
                return []
            case CaptureKind.RESPONSE_HEADERS:
                if not progress.started or progress.responded:
                    return []
                progress.responded = True
                return [self._response_received(detail, delta.timestamp)]
            case CaptureKind.DATA_CHUNK:
                if not progress.responded:
                    return []
                return [self._data_received(detail, delta.timestamp, delta.chunk_length)]
            case CaptureKind.END:
                if not progress.started:
                    return []
                progress.finished = True
                return [self._loading_finished(detail, delta.timestamp)]
            case CaptureKind.ERROR:
                if not progress.started:
                    return []
                progress.finished = True
                return [self._loading_failed(detail, delta.timestamp)]
        return []

    def forget(self, request_ids: list[str]) -> None:
        """Drop progress for evicted requests."""
        for request_id in request_ids:
            self._progress.pop(request_id, None)

    def _request_will_be_sent(self, detail: RequestDetail, timestamp: float) -> WireEvent:
        request: dict = {
            "url": detail.url,
            "method": detail.method,
            "headers": headers_to_object(detail.request_headers),
            "initialPriority": "High",
            "referrerPolicy": "no-referrer",
            "mixedContentType": "none",
        }
        if detail.request_body is not None:
            request["hasPostData"] = True
            request["postData"] = detail.request_body.decode("utf-8", errors="replace")

        return WireEvent(
            "Network.requestWillBeSent",
            {
                "requestId": detail.id,
                "loaderId": str(detail.origin),
                "documentURL": detail.url,
                "request": request,
                "timestamp": timestamp,
                "wallTime": detail.start_time,
                "initiator": _initiator(detail),
                "type": RESOURCE_TYPE,
            },
            detail.id,
        )

    def _response_received(self, detail: RequestDetail, timestamp: float) -> WireEvent:
        response = {
            "url": detail.url,
            "status": detail.status,
            "statusText": detail.status_text,
            "headers": headers_to_object(detail.response_headers),
            "headersText": format_headers_to_header_text(_status_line(detail), detail.response_headers),
            "mimeType": detail.mime_type,
            "charset": detail.charset or "",
            "requestHeaders": headers_to_object(detail.request_headers),
            "requestHeadersText": format_headers_to_header_text(_request_line(detail), detail.request_headers),
            "connectionReused": False,
            "connectionId": 0,
            "encodedDataLength": 0,
            "protocol": _protocol_name(detail.http_version),
            "securityState": "secure" if detail.url.startswith("https:") else "neutral",
        }
        if detail.content_encoding:
            response["contentEncoding"] = detail.content_encoding

        return WireEvent(
            "Network.responseReceived",
            {
                "requestId": detail.id,
                "loaderId": str(detail.origin),
                "timestamp": timestamp,
                "type": RESOURCE_TYPE,
                "response": response,
            },
            detail.id,
        )

    def _data_received(self, detail: RequestDetail, timestamp: float, length: int) -> WireEvent:
        return WireEvent(
            "Network.dataReceived",
            {"requestId": detail.id, "timestamp": timestamp, "dataLength": length, "encodedDataLength": length},
            detail.id,
        )

    def _loading_finished(self, detail: RequestDetail, timestamp: float) -> WireEvent:
        return WireEvent(
            "Network.loadingFinished",
            {"requestId": detail.id, "timestamp": timestamp, "encodedDataLength": detail.encoded_length},
            detail.id,
        )

    def _loading_failed(self, detail: RequestDetail, timestamp: float) -> WireEvent:
        return WireEvent(
            "Network.loadingFailed",
            {
                "requestId": detail.id,
                "timestamp": timestamp,
                "type": RESOURCE_TYPE,
                "errorText": detail.error or "",
                "canceled": detail.canceled,
            },
            detail.id,
        )


class EventLog:
    """Append-only, sequenced log of WireEvents.

    Sessions keep a cursor (last seq seen) and read forward, so every session
    sees one serialized total order. Events leave the log only when their
    request is evicted from the registry, so a retained request always replays
    from its requestWillBeSent.
    """

    def __init__(self):
        self._events: deque[WireEvent] = deque()
        self._seq = 0
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def head(self) -> int:
        """Seq of the newest event (0 when nothing was ever appended)."""
        return self._seq

    def append(self, event: WireEvent) -> WireEvent:
        self._seq += 1
        event.seq = self._seq
        self._events.append(event)

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        return event

    def since(self, cursor: int) -> list[WireEvent]:
        """Events with seq greater than ``cursor``, oldest first."""
        result = []
        for event in reversed(self._events):
            if event.seq <= cursor:
                break
            result.append(event)
        result.reverse()
        return result

    async def wait(self, cursor: int) -> None:
        """Block until an event newer than ``cursor`` exists."""
        while self._seq <= cursor:
            await self._changed.wait()

    def prune(self, request_ids: list[str]) -> None:
        """Remove events of evicted requests."""
        if not request_ids:
            return
        gone = set(request_ids)
        kept = [event for event in self._events if event.request_id not in gone]
        self._events.clear()
        self._events.extend(kept)

    def clear(self) -> None:
        self._events.clear()
