"""Debug server: discovery endpoints and WebSocket sessions.

PUBLIC API:
  - create_app: FastAPI app bound to a NettapService
  - TransportServer: Runs the app with uvicorn on a pre-bound socket
"""

from nettap.api.app import create_app
from nettap.api.server import TransportServer

__all__ = ["create_app", "TransportServer"]
