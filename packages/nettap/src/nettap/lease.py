"""Leader lease persistence and liveness probing.

The lease file is advisory: it tells other processes which pid claims the
port. Ownership itself is decided only by binding the port.

PUBLIC API:
  - bind_port: Atomically claim the debug server port
  - port_is_bound: Whether something already listens on a port
  - pid_exists: Whether a process id is alive
  - probe_leader: Liveness probe for a LeaderLease
  - read_lease: Load the last-known lease for a port
  - write_lease: Record this process as leader
  - remove_lease: Drop the lease if this process owns it
"""

import errno
import json
import logging
import os
import socket
import sys
import time
from pathlib import Path

from nettap.errors import CoordinationError
from nettap.types import LeaderLease

__all__ = ["bind_port", "port_is_bound", "pid_exists", "probe_leader", "read_lease", "write_lease", "remove_lease"]

logger = logging.getLogger(__name__)


def bind_port(host: str, port: int) -> socket.socket:
    """Bind and listen on host:port.

    The OS guarantees at most one successful bind, so this is the election.

    Returns:
        Listening socket, ready to hand to uvicorn.

    Raises:
        CoordinationError: Port is taken (lost the race) or cannot be bound.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        # SO_REUSEADDR on Windows allows double binds, so only set it elsewhere
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise CoordinationError(f"Port {port} is already bound") from e
        raise CoordinationError(f"Cannot bind {host}:{port}: {e}") from e
    sock.setblocking(False)
    return sock


def port_is_bound(host: str, port: int) -> bool:
    """True if a bind on host:port fails because the address is in use."""
    try:
        sock = bind_port(host, port)
    except CoordinationError:
        return True
    sock.close()
    return False


def pid_exists(pid: int) -> bool:
    """True if a process with ``pid`` exists.

    Signal 0 checks existence without delivering anything. EPERM means the
    process exists but belongs to someone else.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as e:
        # Windows raises a generic OSError for unknown pids
        logger.debug(f"Liveness probe for pid {pid} failed: {e}")
        return False
    return True


def probe_leader(lease: LeaderLease | None, host: str) -> bool:
    """Liveness probe: the lease owner exists and its port is held.

    A live pid that no longer holds the port (pid reuse, or a leader that
    crashed mid-start) counts as dead.
    """
    if lease is None:
        return False
    if lease.owner_pid != os.getpid() and not pid_exists(lease.owner_pid):
        return False
    return port_is_bound(host, lease.port)


def read_lease(path: Path) -> LeaderLease | None:
    """Load the lease at ``path``. Unreadable or malformed files count as absent."""
    try:
        data = json.loads(path.read_text())
        return LeaderLease.from_dict(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable lease {path}: {e}")
        return None


def write_lease(path: Path, port: int) -> LeaderLease:
    """Record the current process as owner of ``port``.

    Written to a temp file and renamed so readers never see a partial lease.
    """
    lease = LeaderLease(port=port, owner_pid=os.getpid(), acquired_at=time.time())
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(lease.to_dict()))
    os.replace(tmp, path)
    return lease


def remove_lease(path: Path) -> None:
    """Remove the lease at ``path`` if the current process owns it."""
    lease = read_lease(path)
    if lease is None or lease.owner_pid != os.getpid():
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
