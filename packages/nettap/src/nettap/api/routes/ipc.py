"""Follower relay endpoint.

Followers send ``{"seq": n, "events": [CaptureEvent dicts]}`` and wait for
``{"ack": n}`` before sending the next batch.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from nettap.types import CaptureEvent

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ipc")
async def follower_relay(websocket: WebSocket):
    """Ingest CaptureEvents relayed by a follower process."""
    service = websocket.app.state.service
    await websocket.accept()
    logger.info("Follower linked")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                seq = message["seq"]
                records = message["events"]
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Malformed relay batch: {e}")
                await websocket.send_json({"ack": None, "error": "malformed batch"})
                continue

            for record in records:
                try:
                    event = CaptureEvent.from_dict(record)
                except (ValueError, KeyError, TypeError) as e:
                    service.registry.counters.dropped += 1
                    logger.warning(f"Dropped malformed relayed event: {e}")
                    continue
                service.ingest(event)

            await websocket.send_json({"ack": seq})
    except WebSocketDisconnect:
        logger.info("Follower unlinked")
