from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from typing import Any, Dict, Optional
from ...utils.logging import get_logger
from ..dependencies import HubDependency, WebSocketHubDependency

logger = get_logger(__name__)

realtime_router = APIRouter()
websocket_router = APIRouter()


@websocket_router.websocket("/ws")
async def realtime_stream(websocket: WebSocket, hub: WebSocketHubDependency,
                          token: Optional[str] = Query(None)):
    """Live dashboard stream; the token travels as a query parameter"""
    await websocket.accept()
    identity = await hub.authenticate(websocket, token)
    if identity is None:
        return

    client_id = await hub.register(websocket, identity)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_client_message(client_id, raw)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket {client_id} disconnected")
    except Exception as e:
        logger.warning(f"WebSocket {client_id} closed with error: {e}")
    finally:
        await hub.unregister(client_id)


@realtime_router.get("/realtime/stats")
async def realtime_stats(hub: HubDependency = None) -> Dict[str, Any]:
    return hub.get_stats()
