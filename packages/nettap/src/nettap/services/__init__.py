"""nettap service layer.

Services hold all per-process state and are passed by reference to the API
routes and RPC handlers, so independent instances can coexist in one process.

PUBLIC API:
  - NettapService: Main service orchestrating capture, protocol and coordination
  - NetworkService: Response body lookup
"""

from nettap.services.main import NettapService
from nettap.services.network import NetworkService

__all__ = ["NettapService", "NetworkService"]
