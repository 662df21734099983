"""Discovery and status endpoints."""

from typing import Any, Dict, List

from fastapi import APIRouter, Request

router = APIRouter()

PROTOCOL_VERSION = "1.3"


@router.get("/json")
@router.get("/json/list")
async def list_targets(request: Request) -> List[Dict[str, Any]]:
    """Attachable targets, in the format debugger front-ends poll for."""
    return request.app.state.service.targets()


@router.get("/json/version")
async def get_version(request: Request) -> Dict[str, Any]:
    """Version info front-ends query before attaching."""
    from nettap import __version__

    service = request.app.state.service
    target = service.targets()[0]
    return {
        "Browser": f"nettap/{__version__}",
        "Protocol-Version": PROTOCOL_VERSION,
        "webSocketDebuggerUrl": target["webSocketDebuggerUrl"],
    }


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Quick health check used by followers and tooling."""
    service = request.app.state.service
    status = service.status()
    return {"status": "ok", **status}
