import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bookswap.config import settings
from bookswap.services.websocket_service import WS_CLOSE_AUTH_FAILED, RealtimeChannelManager

router = APIRouter()
logger = logging.getLogger(__name__)


async def receive_text_frame(websocket: WebSocket) -> str:
    """Next text frame from the client. Binary frames are skipped."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        if message.get("text") is not None:
            return message["text"]
        logger.debug("Ignoring binary frame on notification socket")


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket):
    manager: RealtimeChannelManager = websocket.app.state.channel_manager
    await manager.connect(websocket)
    loop = asyncio.get_running_loop()
    auth_deadline = loop.time() + settings.WS_AUTH_TIMEOUT_SECONDS

    try:
        while manager.is_tracked(websocket):
            if manager.is_authenticated(websocket):
                raw = await receive_text_frame(websocket)
            else:
                try:
                    raw = await asyncio.wait_for(
                        receive_text_frame(websocket),
                        timeout=max(auth_deadline - loop.time(), 0),
                    )
                except asyncio.TimeoutError:
                    await manager.close_connection(
                        websocket, WS_CLOSE_AUTH_FAILED, "Authentication timeout"
                    )
                    break

            await manager.handle_message(websocket, raw)
    except WebSocketDisconnect:
        logger.info("Notification connection disconnected")
    finally:
        manager.unregister(websocket)
