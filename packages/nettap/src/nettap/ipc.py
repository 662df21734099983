"""Follower -> leader relay of CaptureEvents.

PUBLIC API:
  - FollowerLink: Bounded, acknowledged relay over the leader's /ipc socket
"""

import asyncio
import json
import logging
from typing import Callable

import websocket

from nettap.errors import IPCError
from nettap.types import CaptureEvent

__all__ = ["FollowerLink"]

logger = logging.getLogger(__name__)

BACKOFF_INITIAL = 0.1
BACKOFF_MAX = 2.0
CONNECT_ATTEMPTS = 6
MAX_BATCH = 100


class FollowerLink:
    """Relays CaptureEvents from a follower to the leader.

    ``offer`` never blocks: when the queue is full the event is dropped and
    counted. A single sender drains the queue in batches and waits for the
    leader to acknowledge each batch before sending the next one. The
    blocking websocket-client calls run in worker threads.

    Attributes:
        url: Leader relay endpoint (ws://host:port/ipc).
        dropped: Events discarded because the queue was full.
        sent: Events acknowledged by the leader.
    """

    def __init__(
        self,
        url: str,
        queue_size: int = 1000,
        on_broken: Callable[[IPCError], None] | None = None,
        timeout: float = 5.0,
    ):
        self.url = url
        self.timeout = timeout
        self.on_broken = on_broken
        self.dropped = 0
        self.sent = 0

        self._queue: asyncio.Queue[CaptureEvent] = asyncio.Queue(maxsize=queue_size)
        self._ws: websocket.WebSocket | None = None
        self._task: asyncio.Task | None = None
        self._seq = 0
        self._unacked: list[CaptureEvent] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._ws.connected

    def stats(self) -> dict:
        return {"queued": self._queue.qsize(), "sent": self.sent, "dropped": self.dropped}

    def offer(self, event: CaptureEvent) -> bool:
        """Queue ``event`` for relay. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning(f"Relay queue full, {self.dropped} events dropped so far")
            return False
        return True

    async def connect(self, attempts: int = CONNECT_ATTEMPTS) -> None:
        """Connect with exponential backoff.

        Raises:
            IPCError: Leader unreachable after ``attempts`` tries.
        """
        delay = BACKOFF_INITIAL
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                self._ws = await asyncio.to_thread(websocket.create_connection, self.url, timeout=self.timeout)
                logger.info(f"Linked to leader at {self.url}")
                return
            except (websocket.WebSocketException, OSError) as e:
                last_error = e
                logger.debug(f"Relay connect attempt {attempt + 1}/{attempts} failed: {e}")
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
                delay = min(delay * 2, BACKOFF_MAX)
        raise IPCError(f"Leader unreachable at {self.url}: {last_error}")

    async def start(self) -> None:
        """Connect and start the sender."""
        await self.connect()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close()

    def pending(self) -> list[CaptureEvent]:
        """Take every event not yet acknowledged, oldest first."""
        events = list(self._unacked)
        self._unacked.clear()
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    async def _run(self) -> None:
        try:
            while True:
                if not self._unacked:
                    self._unacked.append(await self._queue.get())
                    while len(self._unacked) < MAX_BATCH and not self._queue.empty():
                        self._unacked.append(self._queue.get_nowait())
                await self._send(self._unacked)
                self.sent += len(self._unacked)
                self._unacked.clear()
        except IPCError as e:
            logger.warning(f"Relay to leader broken: {e}")
            await self._close()
            if self.on_broken:
                self.on_broken(e)

    async def _send(self, batch: list[CaptureEvent]) -> None:
        self._seq += 1
        payload = json.dumps({"seq": self._seq, "events": [event.to_dict() for event in batch]})
        try:
            await asyncio.to_thread(self._roundtrip, payload, self._seq)
        except (websocket.WebSocketException, OSError, ValueError) as e:
            raise IPCError(f"Relay failed: {e}") from e

    def _roundtrip(self, payload: str, seq: int) -> None:
        ws = self._ws
        if ws is None:
            raise IPCError("Not connected")
        ws.send(payload)
        reply = json.loads(ws.recv())
        if reply.get("ack") != seq:
            raise IPCError(f"Expected ack {seq}, got {reply!r}")

    async def _close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await asyncio.to_thread(ws.close)
            except (websocket.WebSocketException, OSError) as e:
                logger.debug(f"Relay close failed: {e}")
