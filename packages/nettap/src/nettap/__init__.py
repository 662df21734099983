"""nettap - inspect a process's outbound HTTP traffic in a browser debugger.

Call ``register()`` early in a program and every request made with httpx
shows up in the Network panel of any attached DevTools front-end. Several
processes can register against the same port: one serves, the rest relay.

PUBLIC API:
  - register: Install capture hooks and join the debug server (idempotent)
  - unregister: Tear everything down again
  - get_service: The registered NettapService, if any
  - NettapService: Service object for explicit, non-global use
  - NettapConfig: Resolved settings
  - CaptureChannel: Where capture hooks emit lifecycle signals
  - HttpxCapture: Capture hook for httpx
  - __version__: Package version string
"""

import logging
import threading
from importlib.metadata import version

from nettap.capture import CaptureChannel, HttpxCapture
from nettap.config import NettapConfig, load_config
from nettap.services import NettapService

__version__ = version("nettap")

__all__ = [
    "register",
    "unregister",
    "get_service",
    "NettapService",
    "NettapConfig",
    "CaptureChannel",
    "HttpxCapture",
    "__version__",
]

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_service: NettapService | None = None
_capture: HttpxCapture | None = None


def register(**options) -> NettapService:
    """Start capturing this process's traffic.

    A second call returns the already-registered service and installs
    nothing.

    Never raises once options are valid. If the first election outlasts
    ``startupTimeout`` the service keeps electing in the background, and
    captured requests queue until it settles.

    Args:
        **options: NettapConfig fields or their aliases (port, autoOpen,
            maxBodySize, retention, ...). Override nettap.toml and NETTAP_*
            environment variables.

    Returns:
        The running NettapService.
    """
    global _service, _capture

    with _lock:
        if _service is not None:
            return _service

        config = load_config(**options)
        service = NettapService(config)
        capture = HttpxCapture(service.channel, stack_limit=config.stack_limit)
        capture.install()
        service.start_in_thread()

        _service, _capture = service, capture
        logger.info(f"nettap registered as {service.role.value} on port {config.port}")
        return service


def unregister() -> None:
    """Remove capture hooks, stop the service and release the port."""
    global _service, _capture

    with _lock:
        if _service is None:
            return
        if _capture is not None:
            _capture.uninstall()
        _service.stop_in_thread()
        _service, _capture = None, None


def get_service() -> NettapService | None:
    return _service
