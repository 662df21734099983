"""Capture channel and the httpx capture hook.

The channel is the only thing the core consumes: hooks emit CaptureEvents
into it from any host thread, subscribers receive them. HttpxCapture is one
such hook; other stacks can emit into the same channel.

PUBLIC API:
  - CaptureChannel: Thread-safe fan-out of CaptureEvents
  - HttpxCapture: Wraps httpx.Client.send / httpx.AsyncClient.send
  - call_frames: Host call stack at the point a request was issued
"""

import asyncio
import functools
import inspect
import logging
import os
import sysconfig
import threading
import traceback
from pathlib import Path
from typing import Any, Callable

import httpx

from nettap.generate import generate_hash, generate_id
from nettap.types import CaptureEvent, CaptureKind

__all__ = ["CaptureChannel", "HttpxCapture", "call_frames"]

logger = logging.getLogger(__name__)

Subscriber = Callable[[CaptureEvent], None]

_MARKER = "__nettap_capture__"

# Frames from these trees never show up as request initiators
_IGNORED_ROOTS = tuple(
    os.path.join(os.path.realpath(root), "")
    for root in (os.path.dirname(__file__), os.path.dirname(httpx.__file__), sysconfig.get_paths()["stdlib"])
)
_IGNORED_PARTS = ("site-packages", "dist-packages")


def _is_host_file(filename: str) -> bool:
    if not filename or filename.startswith("<"):
        return False
    path = os.path.realpath(filename)
    if path.startswith(_IGNORED_ROOTS):
        return False
    return not any(part in path for part in _IGNORED_PARTS)


def _call_frame(frame: traceback.FrameSummary) -> dict:
    url = Path(frame.filename).resolve().as_uri() if os.path.isabs(frame.filename) else frame.filename
    return {
        "functionName": "" if frame.name == "<module>" else frame.name,
        "scriptId": generate_hash(url),
        "url": url,
        "lineNumber": max((frame.lineno or 1) - 1, 0),
        "columnNumber": frame.colno or 0,
    }


def call_frames(limit: int = 10) -> list[dict]:
    """Host call stack of the current thread, innermost first.

    Frames from nettap, httpx, the standard library and installed packages are
    left out, so what remains is the application code that issued the
    request. Positions are zero-based, as front-ends expect.
    """
    if limit <= 0:
        return []
    frames = traceback.walk_stack(inspect.currentframe())
    host = (entry for entry in frames if _is_host_file(entry[0].f_code.co_filename))
    summary = traceback.StackSummary.extract(host, limit=limit, lookup_lines=False)
    return [_call_frame(frame) for frame in summary]


class CaptureChannel:
    """Fan-out of CaptureEvents to subscribers.

    ``emit`` may be called from any thread and never raises; a failing
    subscriber is logged and skipped.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def emit(self, event: CaptureEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Capture subscriber failed on {event.kind.value}: {e}", exc_info=True)

    # Convenience emitters, one per kind

    def start(
        self,
        correlation_id: str,
        method: str,
        url: str,
        headers: Any = None,
        body: Any = None,
        stack: list[dict] | None = None,
    ) -> None:
        payload = {"method": method, "url": url, "headers": headers}
        if body is not None:
            payload["body"] = body
        if stack:
            payload["stack"] = stack
        self.emit(CaptureEvent(correlation_id, CaptureKind.START, payload=payload))

    def headers_sent(self, correlation_id: str, headers: Any = None, body: Any = None) -> None:
        payload: dict = {}
        if headers is not None:
            payload["headers"] = headers
        if body is not None:
            payload["body"] = body
        self.emit(CaptureEvent(correlation_id, CaptureKind.HEADERS_SENT, payload=payload))

    def response_headers(
        self, correlation_id: str, status: int, headers: Any = None, status_text: str = "", http_version: str = ""
    ) -> None:
        payload = {"status": status, "headers": headers, "status_text": status_text}
        if http_version:
            payload["http_version"] = http_version
        self.emit(CaptureEvent(correlation_id, CaptureKind.RESPONSE_HEADERS, payload=payload))

    def data(self, correlation_id: str, chunk: bytes) -> None:
        self.emit(CaptureEvent(correlation_id, CaptureKind.DATA_CHUNK, payload={"data": chunk}))

    def end(self, correlation_id: str) -> None:
        self.emit(CaptureEvent(correlation_id, CaptureKind.END))

    def error(self, correlation_id: str, error: str, canceled: bool = False) -> None:
        self.emit(CaptureEvent(correlation_id, CaptureKind.ERROR, payload={"error": error, "canceled": canceled}))


class _Tap:
    """Shared bookkeeping for a wrapped response body stream."""

    def __init__(self, capture: "HttpxCapture", correlation_id: str):
        self._capture = capture
        self._cid = correlation_id
        self._seen = False
        self._done = False

    def _chunk(self, chunk: bytes) -> None:
        self._seen = True
        self._capture._emit(self._capture.channel.data, self._cid, chunk)

    def finish(self) -> None:
        if self._done:
            return
        self._done = True
        self._capture._emit(self._capture.channel.end, self._cid)

    def fail(self, exc: BaseException) -> None:
        if self._done:
            return
        self._done = True
        self._capture._failed(self._cid, exc)

    def settle(self, response: httpx.Response) -> None:
        """Finish after a non-streaming read.

        Responses built with preloaded content never iterate the stream, so the
        already-read body is reported instead when it was not content-encoded.
        """
        if not self._seen and not response.headers.get("content-encoding"):
            content = response.content
            if content:
                self._chunk(content)
        self.finish()


class _SyncTap(_Tap, httpx.SyncByteStream):
    def __init__(self, inner: httpx.SyncByteStream, capture: "HttpxCapture", correlation_id: str):
        super().__init__(capture, correlation_id)
        self._inner = inner

    def __iter__(self):
        try:
            for chunk in self._inner:
                self._chunk(chunk)
                yield chunk
        except GeneratorExit:
            raise
        except BaseException as e:
            self.fail(e)
            raise
        self.finish()

    def close(self) -> None:
        try:
            self._inner.close()
        finally:
            self.finish()


class _AsyncTap(_Tap, httpx.AsyncByteStream):
    def __init__(self, inner: httpx.AsyncByteStream, capture: "HttpxCapture", correlation_id: str):
        super().__init__(capture, correlation_id)
        self._inner = inner

    async def __aiter__(self):
        try:
            async for chunk in self._inner:
                self._chunk(chunk)
                yield chunk
        except GeneratorExit:
            raise
        except BaseException as e:
            self.fail(e)
            raise
        self.finish()

    async def aclose(self) -> None:
        try:
            await self._inner.aclose()
        finally:
            self.finish()


class HttpxCapture:
    """Capture hook for httpx clients.

    Wraps ``httpx.Client.send`` and ``httpx.AsyncClient.send`` so every request
    made through any client in this process emits a full capture sequence.
    Body chunks are reported raw (still content-encoded), as they come off the
    transport.

    Attributes:
        channel: Where capture signals go.
        stack_limit: Host frames recorded per request (0 disables).
    """

    def __init__(self, channel: CaptureChannel, stack_limit: int = 10):
        self.channel = channel
        self.stack_limit = stack_limit
        self._originals: dict[type, Callable] = {}

    @property
    def installed(self) -> bool:
        return bool(self._originals)

    def install(self) -> bool:
        """Patch httpx. Returns False if a nettap hook is already installed."""
        if self.installed or getattr(httpx.Client.send, _MARKER, False):
            return False

        self._originals[httpx.Client] = httpx.Client.send
        self._originals[httpx.AsyncClient] = httpx.AsyncClient.send
        httpx.Client.send = self._wrap_sync(httpx.Client.send)
        httpx.AsyncClient.send = self._wrap_async(httpx.AsyncClient.send)
        logger.debug("httpx capture installed")
        return True

    def uninstall(self) -> None:
        """Restore the original httpx methods."""
        for cls, original in self._originals.items():
            cls.send = original
        self._originals.clear()

    def _emit(self, fn: Callable, *args: Any, **kwargs: Any) -> None:
        # Capture bookkeeping must never break the host's request
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"Capture emit failed: {e}", exc_info=True)

    def _begin(self, request: httpx.Request) -> str:
        cid = generate_id()
        try:
            body = request.content
        except httpx.RequestNotRead:
            body = None
        stack = call_frames(self.stack_limit)
        self._emit(self.channel.start, cid, request.method, str(request.url), request.headers, body or None, stack)
        self._emit(self.channel.headers_sent, cid)
        return cid

    def _respond(self, cid: str, response: httpx.Response) -> None:
        self._emit(
            self.channel.response_headers,
            cid,
            response.status_code,
            response.headers,
            status_text=response.reason_phrase,
            http_version=response.http_version,
        )

    def _failed(self, cid: str, exc: BaseException) -> None:
        canceled = isinstance(exc, (asyncio.CancelledError, KeyboardInterrupt))
        self._emit(self.channel.error, cid, f"{type(exc).__name__}: {exc}", canceled=canceled)

    def _wrap_sync(self, original: Callable) -> Callable:
        capture = self

        @functools.wraps(original)
        def send(client, request, *args, stream: bool = False, **kwargs):
            cid = capture._begin(request)
            try:
                response = original(client, request, *args, stream=True, **kwargs)
            except BaseException as e:
                capture._failed(cid, e)
                raise

            capture._respond(cid, response)
            tap = _SyncTap(response.stream, capture, cid)
            response.stream = tap
            if stream:
                return response

            try:
                response.read()
            except BaseException as e:
                tap.fail(e)
                response.close()
                raise
            tap.settle(response)
            return response

        setattr(send, _MARKER, True)
        return send

    def _wrap_async(self, original: Callable) -> Callable:
        capture = self

        @functools.wraps(original)
        async def send(client, request, *args, stream: bool = False, **kwargs):
            cid = capture._begin(request)
            try:
                response = await original(client, request, *args, stream=True, **kwargs)
            except BaseException as e:
                capture._failed(cid, e)
                raise

            capture._respond(cid, response)
            tap = _AsyncTap(response.stream, capture, cid)
            response.stream = tap
            if stream:
                return response

            try:
                await response.aread()
            except BaseException as e:
                tap.fail(e)
                await response.aclose()
                raise
            tap.settle(response)
            return response

        setattr(send, _MARKER, True)
        return send
