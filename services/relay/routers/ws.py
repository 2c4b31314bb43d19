"""
Trashcan Relay — Dashboard WebSocket

Server → client frames: {"event": <name>, "data": {...}}
Client → server frames: {"event": "manual_control" | "ml_feedback", "data": {...}}
"""
from fastapi import APIRouter, WebSocket

from log import get_logger

logger = get_logger()
router = APIRouter()

# RFC 6455 "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


@router.websocket("/ws")
async def dashboard_socket(websocket: WebSocket):
    channel = websocket.app.state.channel
    relay = websocket.app.state.relay

    await websocket.accept()
    session = channel.register(websocket)
    if session is None:
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="too many sessions")
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            text = message.get("text")
            if text is None:
                logger.warning("ws.binary_frame", session=session.id)
                channel.send(session, "validation_error", {"message": "Binary frames are not supported"})
                continue
            relay.submit_client_message(session, text)
    finally:
        await channel.unregister(session)
