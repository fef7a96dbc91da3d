# Central event handling system
import asyncio
import traceback
from typing import Dict, Any, Callable, List, Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)

# Event Manager is the central nervous system
class EventManager:
    def __init__(self, queue_size: int = 10000):
        # Stores callbacks for each event type
        self.subscribers: Dict[str, List[Callable]] = {}
        # Queue for async event processing
        self.event_queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._processor_task: Optional[asyncio.Task] = None

    async def publish(self, event_type: str, data: Dict[str, Any]) -> None:
        # Producers never wait on consumers; a full queue drops the event
        # Example: fanout event
        # event_type = "fanout.broadcast"
        # data = {"message": {"type": "sensor_data", ...}, "channel": "sensor_data"}
        try:
            self.event_queue.put_nowait((event_type, data))
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {event_type} event")

    async def subscribe(self, event_type: str, callback) -> None:
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    async def dispatch(self, event_type: str, data: Dict[str, Any]) -> None:
        """Run every subscriber for one event; a failing callback does not stop the rest"""
        for callback in self.subscribers.get(event_type, []):
            try:
                await callback(data)
            except Exception:
                logger.error(f"Error in {event_type} subscriber: {traceback.format_exc()}")

    async def process_events(self) -> None:
        while True:
            # Continuously process events from queue
            event_type, data = await self.event_queue.get()
            try:
                await self.dispatch(event_type, data)
            finally:
                self.event_queue.task_done()

    async def drain(self) -> None:
        """Process everything currently queued, without the background task"""
        while not self.event_queue.empty():
            event_type, data = self.event_queue.get_nowait()
            try:
                await self.dispatch(event_type, data)
            finally:
                self.event_queue.task_done()

    def start(self) -> None:
        if self._processor_task and not self._processor_task.done():
            return
        self._processor_task = asyncio.create_task(self.process_events())

    async def stop(self) -> None:
        if self._processor_task and not self._processor_task.done():
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
        self._processor_task = None
