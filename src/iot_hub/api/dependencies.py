# src/iot_hub/api/dependencies.py
from fastapi import Request, WebSocket
from typing import Annotated
from fastapi import Depends
from ..storage.base import Store
from ..core.fanout import FanoutHub
from ..core.dispatcher import CommandDispatcher
from ..core.communication_service import CommunicationService


async def get_store(request: Request) -> Store:
    return request.app.state.components.store

async def get_hub(request: Request) -> FanoutHub:
    return request.app.state.components.hub

async def get_ws_hub(websocket: WebSocket) -> FanoutHub:
    return websocket.app.state.components.hub

async def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.components.dispatcher

async def get_communication_service(request: Request) -> CommunicationService:
    return request.app.state.components.communication_service

# Type definitions for dependencies
StoreDependency = Annotated[Store, Depends(get_store)]
HubDependency = Annotated[FanoutHub, Depends(get_hub)]
WebSocketHubDependency = Annotated[FanoutHub, Depends(get_ws_hub)]
DispatcherDependency = Annotated[CommandDispatcher, Depends(get_dispatcher)]
CommunicationDependency = Annotated[CommunicationService, Depends(get_communication_service)]
