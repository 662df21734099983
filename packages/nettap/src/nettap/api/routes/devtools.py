"""WebSocket endpoint debugger front-ends attach to."""

import logging

from fastapi import APIRouter, WebSocket, status

from nettap.api.sessions import Session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/devtools/page/{target_id}")
async def devtools_session(websocket: WebSocket, target_id: str):
    """Attach a front-end to the target and serve it until it disconnects."""
    service = websocket.app.state.service
    if target_id != service.target_id:
        logger.warning(f"Rejected attach to unknown target {target_id}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await Session(websocket, service).run()
