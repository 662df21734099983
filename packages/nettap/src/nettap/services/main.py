"""Main service orchestrator for nettap.

One NettapService owns everything a process needs: the capture channel it
listens on, the registry, translator and event log it feeds, and the
coordinator that decides whether this process serves front-ends or relays to
the process that does.
"""

import asyncio
import logging
import os
import threading

from nettap.capture import CaptureChannel
from nettap.config import NettapConfig
from nettap.coordinator import ProcessCoordinator
from nettap.protocol import EventLog, ProtocolTranslator
from nettap.registry import RequestDelta, RequestRegistry
from nettap.rpc import RPCFramework, register_handlers
from nettap.services.network import NetworkService
from nettap.targets import make_target, target_descriptor
from nettap.types import CaptureEvent, Role

logger = logging.getLogger(__name__)


class NettapService:
    """Main service wiring capture, registry, protocol and coordination.

    Build with an explicit config and channel, then either ``await start()``
    on an existing loop or ``start_in_thread()`` from synchronous code. All
    registry mutation happens on the service loop.

    Attributes:
        config: Resolved settings.
        channel: Capture signals come in here.
        registry: Requests observed by this process (or relayed to it).
        translator: RequestDelta -> WireEvent.
        log: Sequenced WireEvents that sessions read.
        network: Body lookups for front-ends.
        rpc: Command dispatch for WebSocket sessions.
        coordinator: Leader election and relaying.
    """

    def __init__(self, config: NettapConfig | None = None, channel: CaptureChannel | None = None):
        self.config = config or NettapConfig()
        self.channel = channel or CaptureChannel()

        self.registry = RequestRegistry(
            max_body_size=self.config.max_body_size,
            retention_count=self.config.retention_count,
            retention_age=self.config.retention_age,
        )
        self.translator = ProtocolTranslator()
        self.log = EventLog()
        self.network = NetworkService(self.registry, body_timeout=self.config.body_timeout)

        self.rpc = RPCFramework()
        register_handlers(self.rpc)

        self.coordinator = ProcessCoordinator(self)
        self.sessions: set = set()

        self.loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe = None
        self._sweep_task: asyncio.Task | None = None
        self._prune_next: set[str] = set()

        # Background-thread hosting (register() from sync code)
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stopping: asyncio.Event | None = None
        self._thread_loop: asyncio.AbstractEventLoop | None = None

    @property
    def role(self) -> Role:
        return self.coordinator.role

    @property
    def running(self) -> bool:
        return self.loop is not None

    @property
    def target_id(self) -> str:
        return make_target(self.config.port, os.getpid())

    def targets(self) -> list[dict]:
        """Discovery list. Only the leader serves this."""
        return [target_descriptor(self.config.host, self.config.port)]

    def status(self) -> dict:
        return {
            "pid": os.getpid(),
            "role": self.role.value,
            "port": self.config.port,
            "sessions": len(self.sessions),
            "events": self.log.head,
            "requests": self.registry.stats(),
            "ipc": self.coordinator.link_stats(),
        }

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to the channel and join the coordination protocol."""
        if self.running:
            return
        self.loop = asyncio.get_running_loop()
        self._unsubscribe = self.channel.subscribe(self._on_capture)
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        try:
            await self.coordinator.start()
        except BaseException:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop relaying/serving and release the port and lease."""
        if not self.running:
            return
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.coordinator.stop()
        self.loop = None
        logger.info("nettap service stopped")

    def start_in_thread(self, timeout: float | None = None) -> None:
        """Run the service on its own event loop in a daemon thread.

        Waits up to ``timeout`` (default ``config.startup_timeout``) for the
        first election. A slow or failed election is logged, never raised:
        the thread keeps electing in the background and stop_in_thread()
        still shuts it down.
        """
        if self._thread is not None:
            return
        timeout = self.config.startup_timeout if timeout is None else timeout

        self._ready.clear()
        self._stopping = asyncio.Event()
        self._thread_loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._thread_main, name="nettap", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout):
            logger.warning(f"nettap election still running after {timeout}s, continuing in background")

    def stop_in_thread(self, timeout: float = 10.0) -> None:
        """Stop a service started with start_in_thread() and join its thread."""
        thread, loop, stopping = self._thread, self._thread_loop, self._stopping
        if thread is None:
            return
        if loop is not None and stopping is not None:
            try:
                loop.call_soon_threadsafe(stopping.set)
            except RuntimeError:
                logger.debug("nettap loop already closed")
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"nettap thread did not exit within {timeout}s")
        self._thread = None

    def _thread_main(self) -> None:
        async def startup():
            try:
                await self.start()
            except Exception as e:
                logger.error(f"nettap service failed to start: {e}", exc_info=True)
            finally:
                self._ready.set()

        async def run():
            task = asyncio.create_task(startup())
            try:
                await self._stopping.wait()
            finally:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                await self.stop()

        loop = self._thread_loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(run())
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.run_until_complete(loop.shutdown_default_executor())
        finally:
            asyncio.set_event_loop(None)
            loop.close()

    # Capture path

    def _on_capture(self, event: CaptureEvent) -> None:
        """Channel subscriber. Runs on whatever thread the host emitted from."""
        loop = self.loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self.coordinator.route, event)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"Dropped {event.kind.value} after shutdown")

    def ingest(self, event: CaptureEvent) -> None:
        """Apply a CaptureEvent locally and publish resulting WireEvents."""
        self.publish(self.registry.ingest(event))

    def publish(self, deltas: list[RequestDelta]) -> None:
        for delta in deltas:
            for wire_event in self.translator.translate(delta):
                self.log.append(wire_event)

    def sweep(self) -> list[str]:
        """Evict expired records. Returns the evicted request ids."""
        deltas, evicted = self.registry.sweep()
        self.publish(deltas)

        # Requests failed by this sweep keep their events until the next one
        failed_now = {delta.detail.id for delta in deltas}
        prune = self._prune_next | {request_id for request_id in evicted if request_id not in failed_now}
        self._prune_next = failed_now & set(evicted)
        self.log.prune(list(prune))
        self.translator.forget(evicted)
        return evicted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Registry sweep failed: {e}", exc_info=True)

    def clear(self) -> None:
        """Drop all retained requests and events."""
        removed = self.registry.clear()
        self.translator.forget(removed)
        self._prune_next.clear()
        self.log.clear()
