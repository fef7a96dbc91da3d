from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
import json
import random

# Fields the gateway protocol defines for relayed node readings
NODE_MEASUREMENT_FIELDS = ("temperature", "humidity", "rssi")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: Optional[datetime] = None) -> str:
    """ISO-8601 timestamp for wire messages, UTC when naive"""
    dt = dt or utcnow()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def parse_payload(raw: Union[Dict[str, Any], str, bytes, None]) -> Optional[Dict[str, Any]]:
    """
    Decode a broker payload into a JSON object.

    The MQTT adapter already tries to decode JSON, so the payload may arrive
    as a dict, a plain string or raw bytes.

    Returns:
        The decoded mapping, or None when the payload is not a JSON object
    """
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode()
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def topic_prefix(pattern: str) -> str:
    """
    Literal leading part of a subscription pattern.
    Example: SensorData/# -> SensorData, OTA/+/response -> OTA
    """
    literal = []
    for segment in pattern.split('/'):
        if segment in ('+', '#'):
            break
        literal.append(segment)
    return '/'.join(literal)


def coerce_identifier(value: Any) -> Optional[str]:
    """Non-empty identifier as a string, or None"""
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    text = str(value).strip()
    return text or None


def as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def device_measurements(payload: Dict[str, Any], id_field: str = "device_id") -> Dict[str, Any]:
    """Everything a direct device sent except its identifier, unmodified"""
    return {key: value for key, value in payload.items() if key != id_field}


def node_measurements(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Known gateway fields only; anything else in the payload is dropped"""
    return {
        key: payload[key]
        for key in NODE_MEASUREMENT_FIELDS
        if payload.get(key) is not None
    }


def node_display_name(name: Any, mac: str) -> str:
    if isinstance(name, str) and name.strip():
        return name.strip()
    return mac


def generate_client_id() -> str:
    """
    Generate a lightweight unique ID for a live subscriber.
    Format: ws_{timestamp}_{random6}
    Example: ws_20240107123456789012_042137
    """
    ts = datetime.now().strftime('%Y%m%d%H%M%S%f')

    # Random suffix handles two connections in the same microsecond
    rand = str(random.randint(0, 999999)).zfill(6)

    return f"ws_{ts}_{rand}"
