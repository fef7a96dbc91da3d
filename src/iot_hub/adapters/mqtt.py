import asyncio
from typing import Dict, Any, Callable, Optional, Union, List
from pydantic import BaseModel, Field
import aiomqtt as mqtt
from aiomqtt import Will
import json
import traceback
from ..adapters.base import CommunicationAdapter
from ..utils.logging import get_logger
from ..utils.exceptions import CommunicationError, NotConnectedError
import random
import ssl

logger = get_logger(__name__)

'''
usage Examples

await mqtt_adapter.connect()
await mqtt_adapter.subscribe("SensorData/#", message_handler)

await mqtt_adapter.publish({
    "topic": "CommandRequest/D1",
    "payload": {"command": "reboot"},
    "qos": 1
}, wait=True)

await mqtt_adapter.disconnect()

'''


class MQTTConfig(BaseModel):
    """MQTT configuration model"""
    host: str = Field(..., description="MQTT broker hostname")
    port: int = Field(1883, description="MQTT broker port")
    username: Optional[str] = Field(None, description="MQTT username")
    password: Optional[str] = Field(None, description="MQTT password")
    keepalive: int = Field(60, description="Connection keepalive in seconds")
    client_id: str = Field("iot_hub", description="MQTT client ID")
    ssl: bool = Field(False, description="Enable SSL/TLS")
    reconnect_interval: float = Field(5.0, description="Reconnection interval in seconds")
    max_reconnect_attempts: int = Field(0, description="Consecutive failed attempts before giving up, 0 retries forever")
    message_queue_size: int = Field(1000, description="Maximum size of message queue")
    ca_cert: Optional[str] = Field(None, description="Custom CA certificate")
    client_cert: Optional[str] = Field(None, description="Client certificate")
    client_key: Optional[str] = Field(None, description="Required if client_cert is set")
    verify_hostname: bool = Field(True, description="Verify broker's hostname")
    tls_version: Optional[str] = Field(None, description="TLS1_2, TLS1_3, etc.")
    subscribe_qos: int = Field(0, description="qos for subscribe topics")
    publish_qos: int = Field(0, description="qos for publish message")
    clean_session: bool = Field(True, description="persistent sessions with clean_session=False")


class MQTTMessage(BaseModel):
    """MQTT message model"""
    topic: str
    payload: Union[dict, str, bytes]
    qos: int = Field(0, ge=0, le=2)
    retain: bool = False


def encode_payload(payload: Any) -> bytes:
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    elif not isinstance(payload, (str, bytes)):
        payload = str(payload)
    if isinstance(payload, str):
        payload = payload.encode()
    return payload


def topic_matches(topic: str, pattern: str) -> bool:
    """MQTT wildcard match (+ and #) of a concrete topic against a subscription"""
    try:
        return mqtt.Topic(topic).matches(pattern)
    except ValueError:
        return False


class MQTTAdapter(CommunicationAdapter):
    def __init__(self, config: Dict[str, Any]):
        """Initialize MQTT adapter with configuration"""
        try:
            self.config = MQTTConfig(**config)
            self.config.keepalive = max(30, self.config.keepalive)
        except Exception as e:
            raise CommunicationError(f"Invalid MQTT configuration: {str(e)}")

        self.client: Optional[mqtt.Client] = None
        self.message_handlers: Dict[str, List[Callable]] = {}
        self.connected = asyncio.Event()
        self._stop_flag = asyncio.Event()
        self._message_processor_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._message_queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.message_queue_size)
        self._subscription_lock = asyncio.Lock()
        # Held while one inbound message runs through its handlers
        self._dispatch_lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self._publish_queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._publisher_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.connected.is_set()

    @property
    def status_topic(self) -> str:
        return f"{self.config.client_id}/status"

    async def _publish_worker(self):
        """Worker task to handle publishing messages from queue"""
        while not self._stop_flag.is_set():
            try:
                message = await self._publish_queue.get()
                attempt = 0
                while attempt < 5 and not self._stop_flag.is_set():
                    try:
                        await self._publish_now(message)
                        logger.debug(f"Published to {message.topic}")
                        break
                    except Exception as e:
                        attempt += 1
                        if attempt >= 5:
                            logger.error(f"Failed to publish message after {attempt} attempts: {str(e)}")
                            break
                        wait_time = min(self.config.reconnect_interval * (2 ** (attempt - 1)), 60)
                        logger.warning(f"Publish attempt {attempt} failed, retrying in {wait_time} seconds...")
                        await asyncio.sleep(wait_time)
                self._publish_queue.task_done()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in publish worker: {str(e)}")
                await asyncio.sleep(1)

    async def _publish_now(self, message: MQTTMessage) -> None:
        async with self._publish_lock:  # Ensure only one publish operation at a time
            if not self.is_connected:
                raise NotConnectedError("Not connected to MQTT broker")
            await self.client.publish(
                topic=message.topic,
                payload=message.payload,
                qos=message.qos,
                retain=message.retain
            )

    async def _subscribe_topics(self, client: mqtt.Client) -> None:
        """Subscribe to all stored topics"""
        async with self._subscription_lock:
            for topic in self.message_handlers:
                try:
                    await client.subscribe(topic, qos=self.config.subscribe_qos)
                    logger.info(f"Resubscribed to topic: {topic}")
                except Exception as e:
                    logger.error(f"Failed to resubscribe to topic {topic}: {str(e)}")

    def _create_tls_context(self) -> Optional[ssl.SSLContext]:
        """Create SSL context for MQTT connection based on config"""
        if not self.config.ssl:
            return None

        context = ssl.create_default_context()

        if self.config.ca_cert:
            context.load_verify_locations(cafile=self.config.ca_cert)

        if self.config.client_cert:
            if not self.config.client_key:
                raise ValueError("Client key must be provided when using client certificate")
            context.load_cert_chain(
                certfile=self.config.client_cert,
                keyfile=self.config.client_key
            )

        if self.config.tls_version:
            context.minimum_version = getattr(ssl.TLSVersion, self.config.tls_version.upper(),
                                              ssl.TLSVersion.TLSv1_2)

        context.check_hostname = self.config.verify_hostname
        if not self.config.verify_hostname:
            context.verify_mode = ssl.CERT_NONE

        return context

    def _create_client(self) -> mqtt.Client:
        # Last Will and Testament marks the hub offline if the connection drops
        will = Will(
            topic=self.status_topic,
            payload="Offline",
            qos=self.config.subscribe_qos,
            retain=True)

        return mqtt.Client(
            hostname=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.password,
            keepalive=self.config.keepalive,
            identifier=f"{self.config.client_id}_{random.randint(1000, 9999)}",
            clean_session=self.config.clean_session,
            will=will,
            tls_context=self._create_tls_context()
        )

    async def _process_messages(self) -> None:
        """Hold the broker connection, reconnecting with backoff, and queue incoming messages"""
        attempt = 0
        while not self._stop_flag.is_set():
            try:
                async with self._create_client() as client:
                    self.client = client
                    self.connected.set()
                    attempt = 0
                    try:
                        await client.publish(self.status_topic, payload="Online", qos=1, retain=True)
                        await self._subscribe_topics(client)
                        logger.info(f"Connected to MQTT broker with client ID: {self.config.client_id}")

                        async for message in client.messages:
                            if self._stop_flag.is_set():
                                break
                            self._enqueue(str(message.topic), message.payload)
                    finally:
                        self.connected.clear()
                        self.client = None
                        logger.info("Disconnected from MQTT broker")

            except asyncio.CancelledError:
                break
            except Exception:
                if self._stop_flag.is_set():
                    break
                attempt += 1
                logger.error(f"MQTT connection attempt {attempt} failed: {traceback.format_exc()}")
                if self.config.max_reconnect_attempts and attempt >= self.config.max_reconnect_attempts:
                    logger.error(f"Giving up on MQTT broker after {attempt} attempts")
                    break

                # Exponential backoff for reconnection attempts
                wait_time = min(self.config.reconnect_interval * (2 ** (attempt - 1)), 60)
                logger.info(f"MQTT Retry will happen after {wait_time} seconds")
                try:
                    await asyncio.wait_for(self._stop_flag.wait(), timeout=wait_time)
                except asyncio.TimeoutError:
                    pass

    def _enqueue(self, topic: str, raw: Any) -> None:
        try:
            payload = raw.decode() if isinstance(raw, (bytes, bytearray)) else raw
        except UnicodeDecodeError:
            payload = raw
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
                logger.debug(f"received {payload} from {topic}")
            except json.JSONDecodeError:
                pass  # Keep payload as string if not JSON

        try:
            self._message_queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            logger.warning(f"Message queue full, dropping message on {topic}")

    async def dispatch(self, topic: str, payload: Any) -> None:
        """Run every handler whose subscription pattern matches the topic"""
        for pattern, handlers in list(self.message_handlers.items()):
            if not topic_matches(topic, pattern):
                continue
            for handler in list(handlers):
                try:
                    await handler(topic, payload)
                except Exception:
                    logger.error(f"Error in message handler for topic {topic}: {traceback.format_exc()}")

    async def _process_message_queue(self) -> None:
        """Process messages from the queue, one at a time"""
        while not self._stop_flag.is_set():
            try:
                topic, payload = await self._message_queue.get()
                async with self._dispatch_lock:
                    if not self._stop_flag.is_set():
                        await self.dispatch(topic, payload)
                self._message_queue.task_done()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.error(f"Error processing queued message: {traceback.format_exc()}")
                await asyncio.sleep(1)

    async def connect(self) -> None:
        """Connect to MQTT broker and start message processing"""
        try:
            self._stop_flag.clear()
            self._message_processor_task = asyncio.create_task(self._process_messages())
            self._publisher_task = asyncio.create_task(self._publish_worker())
            self._dispatch_task = asyncio.create_task(self._process_message_queue())
        except Exception as e:
            raise CommunicationError(f"Failed to start MQTT adapter: {str(e)}")

    async def disconnect(self) -> None:
        """Disconnect from the broker; the message being handled finishes, the backlog is dropped"""
        self._stop_flag.set()

        # Taking the lock waits for the in-flight message
        async with self._dispatch_lock:
            await self._cancel(self._dispatch_task)
        await self._cancel(self._publisher_task)
        await self._cancel(self._message_processor_task)
        self._dispatch_task = self._publisher_task = self._message_processor_task = None

        dropped = self._message_queue.qsize()
        self._message_queue = asyncio.Queue(maxsize=self.config.message_queue_size)
        self._publish_queue = asyncio.Queue(maxsize=1000)
        self.connected.clear()
        self.client = None
        if dropped:
            logger.info(f"Dropped {dropped} queued MQTT messages on shutdown")
        logger.info("MQTT adapter stopped")

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def subscribe(self, topic: str, handler: Callable[[str, Any], Any]) -> None:
        """Subscribe to MQTT topic pattern with handler"""
        async with self._subscription_lock:
            try:
                if topic not in self.message_handlers:
                    self.message_handlers[topic] = []
                    # Otherwise picked up by _subscribe_topics on connect
                    if self.is_connected:
                        await self.client.subscribe(topic, qos=self.config.subscribe_qos)

                self.message_handlers[topic].append(handler)
                logger.info(f"Subscribed to topic: {topic}")
            except Exception as e:
                raise CommunicationError(f"Failed to subscribe to topic {topic}: {str(e)}")

    async def unsubscribe(self, topic: str, handler: Optional[Callable] = None) -> None:
        """Unsubscribe from MQTT topic"""
        try:
            if topic in self.message_handlers:
                if handler:
                    self.message_handlers[topic].remove(handler)
                if not handler or not self.message_handlers[topic]:
                    del self.message_handlers[topic]
                    if self.is_connected:
                        await self.client.unsubscribe(topic)

            logger.info(f"Unsubscribed from topic: {topic}")

        except Exception:
            raise CommunicationError(f"Failed to unsubscribe from topic {topic}: {traceback.format_exc()}")

    async def publish(self, message: Union[MQTTMessage, Dict[str, Any]], wait: bool = False) -> None:
        """
        Publish a message.

        With wait=False the message is queued and retried in the background.
        With wait=True it is sent immediately; NotConnectedError or
        CommunicationError reach the caller.
        """
        try:
            if isinstance(message, dict):
                message = MQTTMessage(**message)

            outgoing = MQTTMessage(
                topic=message.topic,
                payload=encode_payload(message.payload),
                qos=message.qos,
                retain=message.retain
            )
        except Exception as e:
            raise CommunicationError(f"Invalid MQTT message: {str(e)}")

        if wait:
            try:
                await self._publish_now(outgoing)
            except NotConnectedError:
                raise
            except Exception as e:
                raise CommunicationError(f"Failed to publish to {outgoing.topic}: {str(e)}")
            logger.debug(f"Published to {outgoing.topic}")
            return

        try:
            self._publish_queue.put_nowait(outgoing)
            logger.debug(f"Queued message for topic: {outgoing.topic}")
        except asyncio.QueueFull:
            logger.error("Publish queue full, dropping message")
            raise CommunicationError("Publish queue full")
