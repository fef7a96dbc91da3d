from typing import Any, Optional

from .fanout import CHANNEL_LOGS, publish_fanout, system_log_event
from ..models.entities import LogCategory, LogLevel, SystemLogEntry
from ..storage.base import Store
from ..utils.logging import get_logger

logger = get_logger(__name__)


class AuditLog:
    """Writes SystemLogEntry rows and mirrors them to the ``logs`` channel"""
    def __init__(self, store: Store, event_manager=None):
        self.store = store
        self.event_manager = event_manager

    async def record(self, category: LogCategory, message: str, level: LogLevel = LogLevel.INFO,
                     details: Any = None, source_id: Optional[str] = None) -> SystemLogEntry:
        entry = SystemLogEntry(
            category=category,
            level=level,
            message=message,
            details=details,
            source_id=source_id,
        )
        await self.store.insert_log(entry)
        await publish_fanout(self.event_manager, system_log_event(entry), CHANNEL_LOGS)
        return entry

    async def try_record(self, category: LogCategory, message: str, level: LogLevel = LogLevel.INFO,
                         details: Any = None, source_id: Optional[str] = None) -> Optional[SystemLogEntry]:
        """Best effort: a failed write is logged and swallowed so it never replaces the error being reported"""
        try:
            return await self.record(category, message, level, details, source_id)
        except Exception as e:
            logger.error(f"Failed to write {category.value} audit entry '{message}': {e}")
            return None
