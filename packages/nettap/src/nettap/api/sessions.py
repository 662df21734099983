"""Attached debugger sessions.

PUBLIC API:
  - Session: One front-end WebSocket connection
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from fastapi import WebSocket, WebSocketDisconnect

from nettap.generate import generate_id
from nettap.rpc import RPCContext

if TYPE_CHECKING:
    from nettap.services.main import NettapService

__all__ = ["Session"]

logger = logging.getLogger(__name__)


class Session:
    """One attached debugger front-end.

    Commands are handled concurrently, each in its own task, so a slow
    getResponseBody never holds up event delivery or other commands. Events
    are pumped from the service's EventLog starting at this session's cursor.
    Every outbound frame goes through one lock so frames never interleave.

    Attributes:
        id: Session id (for logs).
        enabled: Whether Network events are being streamed.
        cursor: Seq of the last event delivered.
    """

    def __init__(self, websocket: WebSocket, service: "NettapService"):
        self.id = generate_id()
        self.websocket = websocket
        self.service = service
        self.enabled = False
        self.cursor = 0
        self._send_lock = asyncio.Lock()
        self._pump: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    async def send(self, message: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(message))

    def enable(self) -> None:
        """Start streaming. With replay on, retained events are sent first."""
        if self.enabled:
            return
        self.enabled = True
        self.cursor = 0 if self.service.config.replay else self.service.log.head
        self._pump = asyncio.create_task(self._pump_events())
        logger.debug(f"Session {self.id} enabled at cursor {self.cursor}")

    def disable(self) -> None:
        self.enabled = False
        if self._pump:
            self._pump.cancel()
            self._pump = None

    async def run(self) -> None:
        """Receive commands until the front-end disconnects."""
        self.service.sessions.add(self)
        logger.info(f"Session {self.id} attached ({len(self.service.sessions)} total)")
        try:
            while True:
                raw = await self.websocket.receive_text()
                task = asyncio.create_task(self._handle(raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except WebSocketDisconnect:
            pass
        finally:
            self.close()
            logger.info(f"Session {self.id} detached")

    def close(self) -> None:
        self.disable()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self.service.sessions.discard(self)

    async def _handle(self, raw: str) -> None:
        reply = await self.service.rpc.dispatch(raw, RPCContext(self.service, self))
        if reply is None:
            return
        try:
            await self.send(reply)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Session {self.id} gone before reply: {e}")

    async def _pump_events(self) -> None:
        log = self.service.log
        try:
            while True:
                await log.wait(self.cursor)
                head = log.head
                for event in log.since(self.cursor):
                    await self.send(event.to_message())
                    self.cursor = event.seq
                # Events pruned before they were read are skipped
                self.cursor = max(self.cursor, head)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Session {self.id} stopped receiving events: {e}")
