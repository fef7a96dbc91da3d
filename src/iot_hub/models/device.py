from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class DeviceCommand(BaseModel):
    command: str = Field(..., min_length=1)
    params: Optional[Dict[str, Any]] = None


class OTARequest(BaseModel):
    firmware_version: str = Field(..., min_length=1)
    firmware_url: str = Field(..., min_length=1)


class DispatchResult(BaseModel):
    success: bool = True
    topic: str
    message: Dict[str, Any]
