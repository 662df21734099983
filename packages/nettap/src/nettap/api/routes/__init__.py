"""Debug server routes.

PUBLIC API:
  - include_routes: Attach every router to the app

Route Modules:
  - discovery.py: /json, /json/list, /json/version, /health
  - devtools.py: Front-end WebSocket sessions
  - ipc.py: Follower relay WebSocket
"""

from fastapi import FastAPI


def include_routes(app: FastAPI):
    """Attach the discovery, front-end and relay routers to ``app``."""
    from nettap.api.routes import devtools, discovery, ipc

    app.include_router(discovery.router)
    app.include_router(devtools.router)
    app.include_router(ipc.router)
