from enum import Enum
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator

from ..utils.helpers import utcnow


class EntityStatus(str, Enum):
    ACTIVE = "active"
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"

    @property
    def is_live(self) -> bool:
        return self in (EntityStatus.ACTIVE, EntityStatus.ONLINE)


class SourceType(str, Enum):
    DEVICE = "device"
    NODE = "node"


class LogCategory(str, Enum):
    MQTT = "mqtt"
    DEVICE = "device"
    GATEWAY = "gateway"
    OTA = "ota"
    NODE = "node"
    COMMAND = "command"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class OTAStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class Device(BaseModel):
    device_id: str
    device_name: str
    status: EntityStatus = EntityStatus.ACTIVE
    last_seen: datetime = Field(default_factory=utcnow)
    firmware_version: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('status', mode='before')
    @classmethod
    def unknown_status(cls, v):
        # Rows written by older tools may carry arbitrary status strings
        try:
            return EntityStatus(v)
        except ValueError:
            return EntityStatus.UNKNOWN


class Gateway(BaseModel):
    gateway_id: str
    gateway_name: str
    status: EntityStatus = EntityStatus.ACTIVE
    last_seen: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    # Computed from the nodes collection when read
    node_count: int = 0

    @field_validator('status', mode='before')
    @classmethod
    def unknown_status(cls, v):
        try:
            return EntityStatus(v)
        except ValueError:
            return EntityStatus.UNKNOWN


class Node(BaseModel):
    mac: str
    gateway_id: str
    node_name: str
    rssi: Optional[float] = None
    last_seen: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class SensorReading(BaseModel):
    source_id: str
    source_type: SourceType
    gateway_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class SystemLogEntry(BaseModel):
    category: LogCategory
    message: str
    level: LogLevel = LogLevel.INFO
    details: Optional[Any] = None
    source_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class OTAHistory(BaseModel):
    id: Optional[int] = None
    device_id: str
    firmware_version: str
    firmware_url: Optional[str] = None
    status: OTAStatus = OTAStatus.PENDING
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
