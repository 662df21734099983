"""Target descriptors for the discovery endpoint.

nettap exposes exactly one attachable target per leader: the network activity
of every process that relays to it.

PUBLIC API:
  - make_target: Create target ID from port and leader pid
  - parse_target: Parse target ID into port and pid
  - target_descriptor: Discovery entry for the target
  - frontend_url: devtools:// URL that opens the inspector on the target
"""

import os

from nettap.generate import generate_hash

__all__ = ["make_target", "parse_target", "target_descriptor", "frontend_url", "websocket_path"]

TARGET_TYPE = "node"


def make_target(port: int, pid: int) -> str:
    """Create target ID from port and leader pid.

    Args:
        port: Debug server port (e.g., 9229)
        pid: Leader process id

    Returns:
        Target ID in format "{port}-{base36 hash}", stable for one leader
    """
    return f"{port}-{generate_hash(f'{port}:{pid}').lstrip('-')}"


def parse_target(target: str) -> tuple[int, str]:
    """Parse target ID into port and hash.

    Examples:
        >>> parse_target("9229-abc12")
        (9229, "abc12")
    """
    port_str, short_id = target.split("-", 1)
    return int(port_str), short_id


def websocket_path(target_id: str) -> str:
    return f"/devtools/page/{target_id}"


def frontend_url(host: str, port: int, target_id: str) -> str:
    """Inspector URL a Chromium-based browser can open directly."""
    return f"devtools://devtools/bundled/inspector.html?ws={host}:{port}{websocket_path(target_id)}"


def target_descriptor(host: str, port: int, pid: int | None = None, title: str | None = None) -> dict:
    """Discovery entry for the leader's single target.

    Args:
        host: Host front-ends should connect to
        port: Debug server port
        pid: Leader pid. Defaults to the current process.
        title: Display title. Defaults to "nettap[pid]".

    Returns:
        Dict with id, title, type, url, webSocketDebuggerUrl, devtoolsFrontendUrl
    """
    pid = os.getpid() if pid is None else pid
    target_id = make_target(port, pid)
    return {
        "id": target_id,
        "title": title or f"nettap[{pid}]",
        "type": TARGET_TYPE,
        "description": "nettap network capture",
        "url": f"file://{os.getcwd()}",
        "webSocketDebuggerUrl": f"ws://{host}:{port}{websocket_path(target_id)}",
        "devtoolsFrontendUrl": frontend_url(host, port, target_id),
    }
