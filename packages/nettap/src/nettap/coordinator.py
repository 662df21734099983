"""Leader election across cooperating processes.

Every process runs Unknown -> Probing -> Leader | Follower, and goes back to
Probing when its leader disappears. The leader owns the debug server port;
followers relay their CaptureEvents to it.

PUBLIC API:
  - ProcessCoordinator: Election, relaying and re-election for one service
"""

import asyncio
import atexit
import logging
import os
import subprocess
import sys
from collections import deque
from typing import TYPE_CHECKING

from nettap.api.server import TransportServer
from nettap.browser import open_frontend
from nettap.errors import CoordinationError, IPCError
from nettap.ipc import FollowerLink
from nettap.lease import bind_port, port_is_bound, probe_leader, read_lease, remove_lease, write_lease
from nettap.targets import frontend_url, make_target
from nettap.types import CaptureEvent, LeaderLease, Role

if TYPE_CHECKING:
    from nettap.services.main import NettapService

__all__ = ["ProcessCoordinator"]

logger = logging.getLogger(__name__)

ELECTION_ATTEMPTS = 5
BACKOFF_INITIAL = 0.1
BACKOFF_MAX = 2.0
DETACHED_STARTUP_TIMEOUT = 10.0

_exit_hooks: set[str] = set()


class ProcessCoordinator:
    """Decides whether this process serves front-ends or relays to the one that does.

    Election is a bind of the configured port: the OS lets exactly one
    process win. Losers follow the winner over its /ipc endpoint. Events
    captured while no role is settled are held in a bounded buffer and
    flushed once one is.

    Attributes:
        role: Current Role.
        lease: Last lease written (leader) or read (follower).
        server: Running TransportServer while leader.
        link: FollowerLink while follower.
        elections: Number of election rounds run.
        dropped: Events discarded while no role was settled.
    """

    def __init__(self, service: "NettapService"):
        self.service = service
        self.config = service.config
        self.role = Role.UNKNOWN
        self.lease: LeaderLease | None = None
        self.server: TransportServer | None = None
        self.link: FollowerLink | None = None
        self.elections = 0
        self.dropped = 0

        self._pending: deque[CaptureEvent] = deque(maxlen=self.config.ipc_queue_size)
        self._lock: asyncio.Lock | None = None
        self._watch_task: asyncio.Task | None = None
        self._recover_task: asyncio.Task | None = None
        self._child: subprocess.Popen | None = None

    @property
    def is_leader(self) -> bool:
        return self.role == Role.LEADER

    def link_stats(self) -> dict | None:
        if self.link is None:
            return None
        return self.link.stats()

    # Lifecycle

    async def start(self) -> None:
        """Run the first election and start watching the leader."""
        self._lock = asyncio.Lock()
        await self.elect()
        self._watch_task = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        """Leave the protocol: stop serving or relaying, release the lease."""
        previous, self.role = self.role, Role.STOPPED
        for task in (self._watch_task, self._recover_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._watch_task = self._recover_task = None

        if self.link:
            await self.link.stop()
            self.link = None
        if self.server:
            await self.server.stop()
            self.server = None
            remove_lease(self.config.lease_path)
        self.lease = None
        self._pending.clear()
        logger.info(f"Coordinator stopped (was {previous.value})")

    # Routing (service loop only)

    def route(self, event: CaptureEvent) -> None:
        """Send a locally captured event wherever the current role says."""
        if self.role == Role.LEADER:
            self.service.ingest(event)
        elif self.role == Role.FOLLOWER and self.link is not None:
            self.link.offer(event)
        elif self.role != Role.STOPPED:
            if len(self._pending) == self._pending.maxlen:
                self.dropped += 1
            self._pending.append(event)

    def _flush_pending(self) -> None:
        while self._pending:
            event = self._pending.popleft()
            if self.role == Role.LEADER:
                self.service.ingest(event)
            elif self.link is not None:
                self.link.offer(event)

    # Election

    async def elect(self) -> Role:
        """Run one election round with backoff between attempts.

        Returns at once when a role is already settled; leaving one goes
        through _reelect(). Never raises: if no attempt settles a role, the
        process stays Probing and the watcher retries on its next tick.
        """
        async with self._lock:
            if self.role in (Role.STOPPED, Role.LEADER, Role.FOLLOWER):
                return self.role
            self.role = Role.PROBING
            self.elections += 1

            delay = BACKOFF_INITIAL
            for attempt in range(ELECTION_ATTEMPTS):
                try:
                    await self._elect_once()
                    return self.role
                except (CoordinationError, IPCError) as e:
                    logger.debug(f"Election attempt {attempt + 1}/{ELECTION_ATTEMPTS} failed: {e}")
                if self.role == Role.STOPPED:
                    return self.role
                await asyncio.sleep(delay)
                delay = min(delay * 2, BACKOFF_MAX)

            logger.warning(f"No leader settled on port {self.config.port}, retrying in {self.config.probe_interval}s")
            return self.role

    async def _elect_once(self) -> None:
        if await asyncio.to_thread(self._leader_alive):
            await self._follow()
            return

        if self.config.detached:
            await self._spawn_leader()
            await self._follow()
            return

        try:
            sock = bind_port(self.config.host, self.config.port)
        except CoordinationError:
            # Someone holds the port without a live lease yet (leader still starting)
            await self._follow()
            return
        await self._lead(sock)

    def _leader_alive(self) -> bool:
        lease = read_lease(self.config.lease_path)
        if lease is not None:
            return probe_leader(lease, self.config.host)
        return port_is_bound(self.config.host, self.config.port)

    async def _lead(self, sock) -> None:
        server = TransportServer(self.service, sock)
        try:
            await server.start()
        except Exception as e:
            sock.close()
            raise CoordinationError(f"Debug server failed to start: {e}") from e

        self.server = server
        self.lease = write_lease(self.config.lease_path, self.config.port)
        self._register_exit_hook()
        self.role = Role.LEADER
        self._flush_pending()

        host, port = self.config.host, self.config.port
        logger.info(f"Leader on {host}:{port} (pid {os.getpid()}), discovery at http://{host}:{port}/json")

        if self.config.auto_open:
            url = frontend_url(host, port, make_target(port, os.getpid()))
            await asyncio.to_thread(open_frontend, url)

    async def _follow(self) -> None:
        link = FollowerLink(
            f"ws://{self.config.host}:{self.config.port}/ipc",
            queue_size=self.config.ipc_queue_size,
            on_broken=lambda error: self._on_link_broken(link, error),
        )
        await link.start()

        self.link = link
        self.lease = read_lease(self.config.lease_path)
        self.role = Role.FOLLOWER
        self._flush_pending()
        owner = self.lease.owner_pid if self.lease else "unknown"
        logger.info(f"Following leader pid {owner} on port {self.config.port}")

    async def _spawn_leader(self) -> None:
        """Start ``python -m nettap serve`` as a detached leader and wait for it to bind."""
        if self._child is None or self._child.poll() is not None:
            cmd = [
                sys.executable,
                "-m",
                "nettap",
                "serve",
                "--port",
                str(self.config.port),
                "--host",
                self.config.host,
            ]
            env = {**os.environ, "NETTAP_LEASE_DIR": str(self.config.lease_dir)}
            logger.info(f"Spawning detached leader: {' '.join(cmd)}")
            self._child = subprocess.Popen(
                cmd, start_new_session=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, env=env
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + DETACHED_STARTUP_TIMEOUT
        while not await asyncio.to_thread(port_is_bound, self.config.host, self.config.port):
            code = self._child.poll()
            if code is not None:
                raise CoordinationError(f"Detached leader exited with code {code}")
            if loop.time() > deadline:
                raise CoordinationError("Detached leader did not bind in time")
            await asyncio.sleep(0.1)

    def _register_exit_hook(self) -> None:
        path = str(self.config.lease_path)
        if path in _exit_hooks:
            return
        _exit_hooks.add(path)
        atexit.register(remove_lease, self.config.lease_path)

    # Leader loss

    def _on_link_broken(self, link: FollowerLink, error: IPCError) -> None:
        if self.role != Role.FOLLOWER or self.link is not link:
            return
        logger.info(f"Relay to leader broke: {error}")
        self._recover_task = asyncio.create_task(self._reelect(link))

    async def _reelect(self, link: FollowerLink | None) -> None:
        """Drop ``link`` and elect again, unless something already replaced it."""
        async with self._lock:
            if self.role != Role.FOLLOWER or self.link is not link:
                return
            await self._drop_link()
        await self.elect()

    async def _drop_link(self) -> None:
        link, self.link = self.link, None
        self.role = Role.PROBING
        if link is None:
            return
        leftover = link.pending()
        await link.stop()
        # Unacknowledged events are older than anything buffered since
        self._pending.extendleft(reversed(leftover))

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self.config.probe_interval)
            try:
                if self.role == Role.FOLLOWER:
                    link = self.link
                    if not await asyncio.to_thread(self._leader_alive):
                        logger.info("Leader gone, re-electing")
                        await self._reelect(link)
                elif self.role == Role.PROBING and not self._lock.locked():
                    await self.elect()
            except Exception as e:
                logger.error(f"Leader watch failed: {e}", exc_info=True)
