# src/iot_hub/api/routes.py
from fastapi import APIRouter
from typing import Any, Dict
from ..utils.helpers import isoformat
from .dependencies import CommunicationDependency, HubDependency

health_router = APIRouter()

@health_router.get("/health")
async def health(
    communication: CommunicationDependency = None,
    hub: HubDependency = None
) -> Dict[str, Any]:
    return {
        "status": "ok",
        "mqtt_connected": bool(communication and communication.is_connected),
        "realtime_clients": len(hub.subscribers) if hub else 0,
        "timestamp": isoformat(),
    }
