import asyncio
import json
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

from fastapi import status

from .auth import Identity, TokenAuthenticator
from ..models.entities import SensorReading, SystemLogEntry
from ..utils.exceptions import AuthenticationError
from ..utils.helpers import generate_client_id, isoformat, utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)

FANOUT_EVENT = "fanout.broadcast"

CHANNEL_DEVICES = "devices"
CHANNEL_GATEWAYS = "gateways"
CHANNEL_SENSOR_DATA = "sensor_data"
CHANNEL_OTA = "ota"
CHANNEL_LOGS = "logs"


# Server -> client message builders. Every message carries type and timestamp.

def mqtt_message_event(topic: str, payload: Any) -> Dict[str, Any]:
    return {"type": "mqtt_message", "topic": topic, "payload": payload, "timestamp": isoformat()}


def sensor_data_event(reading: SensorReading) -> Dict[str, Any]:
    return {
        "type": "sensor_data",
        "source_type": reading.source_type.value,
        "source_id": reading.source_id,
        "gateway_id": reading.gateway_id,
        "data": reading.data,
        "timestamp": isoformat(reading.timestamp),
    }


def device_status_event(device_id: str, status: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"type": "device_status", "device_id": device_id, "status": status,
            "data": data or {}, "timestamp": isoformat()}


def gateway_status_event(gateway_id: str, status: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"type": "gateway_status", "gateway_id": gateway_id, "status": status,
            "data": data or {}, "timestamp": isoformat()}


def ota_update_event(device_id: str, status: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"type": "ota_update", "device_id": device_id, "status": status,
            "data": data or {}, "timestamp": isoformat()}


def system_log_event(entry: SystemLogEntry) -> Dict[str, Any]:
    return {"type": "system_log", "log": entry.model_dump(mode="json"), "timestamp": isoformat()}


async def publish_fanout(event_manager, message: Dict[str, Any], channel: Optional[str] = None) -> None:
    """Hand a message to the hub through the event manager without waiting on delivery"""
    if event_manager is None:
        return
    await event_manager.publish(FANOUT_EVENT, {"message": message, "channel": channel})


@dataclass
class Subscriber:
    client_id: str
    user: Identity
    connection: Any
    connected_at: datetime = field(default_factory=utcnow)
    subscriptions: Set[str] = field(default_factory=set)
    # Broadcasts and heartbeats never interleave on one socket
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: Optional[asyncio.Task] = None


class FanoutHub:
    """
    Live dashboard subscribers and channel-scoped delivery.

    A connection only needs ``send_json(data)`` and ``close(code, reason)``
    coroutines, which is what a FastAPI/Starlette ``WebSocket`` offers.
    """
    def __init__(self, authenticator: TokenAuthenticator, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.authenticator = authenticator
        self.heartbeat_interval = config.get('heartbeat_interval', 30)
        self.send_timeout = config.get('send_timeout', 5.0)
        self.queue_size = config.get('queue_size', 100)
        self._subscribers: Dict[str, Subscriber] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def subscribers(self) -> Dict[str, Subscriber]:
        return dict(self._subscribers)

    async def attach(self, event_manager) -> None:
        await event_manager.subscribe(FANOUT_EVENT, self._on_fanout_event)

    async def _on_fanout_event(self, data: Dict[str, Any]) -> None:
        await self.broadcast(data["message"], data.get("channel"))

    async def authenticate(self, connection, token: Optional[str]) -> Optional[Identity]:
        """Verify the handshake token, closing the connection on failure"""
        try:
            return self.authenticator.verify(token)
        except AuthenticationError as e:
            reason = "Authentication required" if e.reason == "missing" else "Invalid token"
            logger.info(f"WebSocket connection rejected: {reason}")
            try:
                await connection.close(code=status.WS_1008_POLICY_VIOLATION, reason=reason)
            except Exception as close_error:
                logger.debug(f"Error closing rejected connection: {close_error}")
            return None

    async def register(self, connection, identity: Identity) -> str:
        client_id = generate_client_id()
        while client_id in self._subscribers:
            client_id = generate_client_id()
        subscriber = Subscriber(client_id=client_id, user=identity, connection=connection,
                                outbox=asyncio.Queue(maxsize=self.queue_size))
        self._subscribers[client_id] = subscriber
        logger.info(f"WebSocket client authenticated: {client_id} ({identity.username})")

        await self._send(subscriber, {
            "type": "connected",
            "message": "Connected to real-time stream",
            "clientId": client_id,
            "timestamp": isoformat(),
        })
        # Broadcasts queued before this point are written after "connected"
        subscriber.writer = asyncio.create_task(self._writer(subscriber))
        return client_id

    async def unregister(self, client_id: str) -> None:
        subscriber = self._subscribers.pop(client_id, None)
        if subscriber:
            await self._stop_writer(subscriber)
            logger.info(f"Client disconnected: {client_id} ({subscriber.user.username})")

    async def _writer(self, subscriber: Subscriber) -> None:
        """Drain one subscriber's outbox so a slow socket only delays itself"""
        while True:
            message = await subscriber.outbox.get()
            try:
                await self._write(subscriber, message)
            except asyncio.TimeoutError:
                logger.warning(f"Send to client {subscriber.client_id} timed out, skipping {message.get('type')}")
            except Exception as e:
                logger.warning(f"Failed to send message to client {subscriber.client_id}: {e}")
                if subscriber.client_id in self._subscribers:
                    await self.unregister(subscriber.client_id)
                    await self._close(subscriber, status.WS_1011_INTERNAL_ERROR, "Delivery failed")
                return
            finally:
                subscriber.outbox.task_done()

    async def _stop_writer(self, subscriber: Subscriber) -> None:
        task = subscriber.writer
        subscriber.writer = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        while not subscriber.outbox.empty():
            subscriber.outbox.get_nowait()
            subscriber.outbox.task_done()

    async def subscribe(self, client_id: str, channel: str) -> bool:
        subscriber = self._subscribers.get(client_id)
        if subscriber is None:
            return False
        subscriber.subscriptions.add(channel)
        logger.debug(f"Client {client_id} subscribed to {channel}")
        await self._send(subscriber, {"type": "subscribed", "channel": channel, "timestamp": isoformat()})
        return True

    async def unsubscribe(self, client_id: str, channel: str) -> bool:
        subscriber = self._subscribers.get(client_id)
        if subscriber is None:
            return False
        subscriber.subscriptions.discard(channel)
        logger.debug(f"Client {client_id} unsubscribed from {channel}")
        await self._send(subscriber, {"type": "unsubscribed", "channel": channel, "timestamp": isoformat()})
        return True

    async def handle_client_message(self, client_id: str, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        """Client -> server protocol: ping, subscribe, unsubscribe"""
        try:
            data = raw if isinstance(raw, dict) else json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning(f"Malformed message from client {client_id}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Malformed message from client {client_id}")
            return

        msg_type = data.get("type")
        if msg_type == "ping":
            await self.send_to(client_id, {"type": "pong", "timestamp": isoformat()})
        elif msg_type == "pong":
            pass
        elif msg_type in ("subscribe", "unsubscribe"):
            channel = data.get("channel")
            if not isinstance(channel, str) or not channel:
                logger.warning(f"{msg_type} from {client_id} without a channel")
                return
            if msg_type == "subscribe":
                await self.subscribe(client_id, channel)
            else:
                await self.unsubscribe(client_id, channel)
        else:
            logger.debug(f"Unknown message type from {client_id}: {msg_type}")

    async def send_to(self, client_id: str, message: Dict[str, Any]) -> bool:
        subscriber = self._subscribers.get(client_id)
        if subscriber is None:
            return False
        return await self._send(subscriber, message)

    async def _write(self, subscriber: Subscriber, message: Dict[str, Any]) -> None:
        async with subscriber.send_lock:
            await asyncio.wait_for(subscriber.connection.send_json(message), timeout=self.send_timeout)

    async def _send(self, subscriber: Subscriber, message: Dict[str, Any]) -> bool:
        try:
            await self._write(subscriber, message)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Send to client {subscriber.client_id} timed out")
        except Exception as e:
            logger.warning(f"Failed to send message to client {subscriber.client_id}: {e}")
        return False

    async def broadcast(self, message: Dict[str, Any], channel: Optional[str] = None) -> int:
        """
        Queue a message for every open subscriber, or only for subscribers of
        ``channel``. Each subscriber's writer task does the actual send, so
        this never waits on a socket. A subscriber whose outbox is full misses
        the message.

        Returns:
            Number of subscribers the message was queued for
        """
        if self._closing:
            return 0
        if channel:
            message = {**message, "channel": channel}
        targets = [
            subscriber for subscriber in list(self._subscribers.values())
            if channel is None or channel in subscriber.subscriptions
        ]
        if not targets:
            return 0

        queued = 0
        for subscriber in targets:
            try:
                subscriber.outbox.put_nowait(message)
                queued += 1
            except asyncio.QueueFull:
                logger.warning(f"Outbox full for client {subscriber.client_id}, dropping {message.get('type')}")
        logger.debug(f"Broadcast {message.get('type')} queued for {queued}/{len(targets)} clients (channel={channel})")
        return queued

    async def flush(self) -> None:
        """Wait until every queued message has been written or skipped"""
        await asyncio.gather(*(s.outbox.join() for s in list(self._subscribers.values())))

    async def _heartbeat(self) -> None:
        """Ping every connection on a fixed cadence, dropping the dead ones"""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                subscribers = list(self._subscribers.values())
                ping = {"type": "ping", "timestamp": isoformat()}
                results = await asyncio.gather(*(self._send(s, ping) for s in subscribers))
                for subscriber, alive in zip(subscribers, results):
                    if not alive:
                        logger.info(f"Heartbeat failed for {subscriber.client_id}, dropping client")
                        await self.unregister(subscriber.client_id)
                        await self._close(subscriber, status.WS_1001_GOING_AWAY, "Heartbeat failed")
            except Exception:
                logger.error(f"Error in heartbeat loop: {traceback.format_exc()}")

    def start(self) -> None:
        self._closing = False
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def _close(self, subscriber: Subscriber, code: int, reason: str) -> None:
        try:
            await subscriber.connection.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing client {subscriber.client_id}: {e}")

    async def shutdown(self) -> None:
        """Close every live connection and forget all subscribers"""
        self._closing = True
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        self._heartbeat_task = None

        subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            await self._stop_writer(subscriber)
            await self._close(subscriber, status.WS_1001_GOING_AWAY, "Server shutting down")
        self._subscribers.clear()
        logger.info(f"Realtime hub closed ({len(subscribers)} connections)")

    def get_stats(self) -> Dict[str, Any]:
        clients: List[Dict[str, Any]] = [
            {
                "id": client_id,
                "username": subscriber.user.username,
                "connectedAt": isoformat(subscriber.connected_at),
                "subscriptions": sorted(subscriber.subscriptions),
            }
            for client_id, subscriber in self._subscribers.items()
        ]
        return {"connectedClients": len(clients), "clients": clients}
