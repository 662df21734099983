"""FastAPI application factory.

PUBLIC API:
  - create_app: Build the debug server app bound to one NettapService
"""

from typing import TYPE_CHECKING

from fastapi import FastAPI

from nettap.api.routes import include_routes

if TYPE_CHECKING:
    from nettap.services.main import NettapService

__all__ = ["create_app"]


def create_app(service: "NettapService") -> FastAPI:
    """Build the app. Routes reach the service through ``app.state.service``."""
    api = FastAPI(title="nettap", docs_url=None, redoc_url=None, openapi_url=None)
    api.state.service = service
    include_routes(api)
    return api
