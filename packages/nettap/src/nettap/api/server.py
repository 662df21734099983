"""Debug server lifecycle management.

PUBLIC API:
  - TransportServer: Serves the API on an already-bound socket
"""

import asyncio
import contextlib
import logging
import socket
from typing import TYPE_CHECKING

import uvicorn

from nettap.api.app import create_app

if TYPE_CHECKING:
    from nettap.services.main import NettapService

__all__ = ["TransportServer"]

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handling alone."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class TransportServer:
    """Discovery + WebSocket server for one NettapService.

    The socket is bound by the coordinator before this is created; binding is
    the election, so the server never binds on its own.
    """

    def __init__(self, service: "NettapService", sock: socket.socket):
        self.service = service
        self.sock = sock
        self.app = create_app(service)
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    @property
    def port(self) -> int:
        return self.sock.getsockname()[1]

    async def start(self, timeout: float = 10.0) -> None:
        """Start serving and wait until uvicorn reports it is up."""
        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self.sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError("Debug server exited during startup")
            if loop.time() > deadline:
                await self.stop()
                raise RuntimeError(f"Debug server did not start within {timeout}s")
            await asyncio.sleep(0.01)

        logger.info(f"Debug server listening on {self.service.config.host}:{self.port}")

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop serving and close the socket."""
        if self._server is None or self._task is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Debug server did not stop in time, forcing exit")
            self._server.force_exit = True
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        finally:
            self.sock.close()
            self._server = None
            self._task = None
