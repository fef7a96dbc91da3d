import asyncio
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from .audit import AuditLog
from .fanout import CHANNEL_DEVICES, CHANNEL_GATEWAYS, device_status_event, gateway_status_event, publish_fanout
from ..models.entities import EntityStatus, LogCategory, LogLevel
from ..storage.base import Store
from ..utils.helpers import isoformat, utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


class InactivitySweeper:
    """
    Demotes devices and gateways to offline once they stop reporting.

    Runs one scan immediately on start and then every ``interval`` seconds.
    Nodes carry no status, so a stale node is only reported in the audit log,
    once for each last_seen value it was observed with.
    """
    def __init__(self, store: Store, event_manager=None, config: Optional[Dict[str, Any]] = None,
                 audit: Optional[AuditLog] = None):
        config = config or {}
        self.store = store
        self.event_manager = event_manager
        self.audit = audit or AuditLog(store, event_manager)
        self.threshold = timedelta(seconds=config.get('inactivity_threshold', 300))
        self.interval = config.get('check_interval', 60)
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._reported_nodes: Dict[Tuple[str, str], datetime] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Inactivity sweeper started (threshold={self.threshold.total_seconds():.0f}s, "
                    f"interval={self.interval}s)")

    async def stop(self) -> None:
        if not self.is_running:
            self._task = None
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Inactivity sweeper stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.sweep()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def sweep(self, now: Optional[datetime] = None) -> None:
        """One pass over every entity type; each scan fails on its own"""
        cutoff = _as_utc(now or utcnow()) - self.threshold
        for scan in (self._check_devices, self._check_gateways, self._check_nodes):
            try:
                await scan(cutoff)
            except Exception:
                logger.error(f"Error in {scan.__name__.lstrip('_')}: {traceback.format_exc()}")

    @staticmethod
    def _is_stale(last_seen: Optional[datetime], cutoff: datetime) -> bool:
        return last_seen is not None and _as_utc(last_seen) < cutoff

    async def _check_devices(self, cutoff: datetime) -> None:
        for device in await self.store.list_devices():
            if not device.status.is_live or not self._is_stale(device.last_seen, cutoff):
                continue
            if not await self.store.set_device_status(device.device_id, EntityStatus.OFFLINE):
                continue

            last_seen = isoformat(device.last_seen)
            logger.info(f"Device {device.device_id} marked offline (last seen: {last_seen})")
            await self.audit.try_record(
                LogCategory.DEVICE,
                f"Device {device.device_id} marked offline due to inactivity (last seen: {last_seen})",
                level=LogLevel.WARNING,
                details={"last_seen": last_seen},
                source_id=device.device_id,
            )
            await publish_fanout(self.event_manager, device_status_event(
                device.device_id, EntityStatus.OFFLINE.value, {"last_seen": last_seen}), CHANNEL_DEVICES)

    async def _check_gateways(self, cutoff: datetime) -> None:
        for gateway in await self.store.list_gateways():
            if not gateway.status.is_live or not self._is_stale(gateway.last_seen, cutoff):
                continue
            if not await self.store.set_gateway_status(gateway.gateway_id, EntityStatus.OFFLINE):
                continue

            last_seen = isoformat(gateway.last_seen)
            logger.info(f"Gateway {gateway.gateway_id} marked offline (last seen: {last_seen})")
            await self.audit.try_record(
                LogCategory.GATEWAY,
                f"Gateway {gateway.gateway_id} marked offline due to inactivity (last seen: {last_seen})",
                level=LogLevel.WARNING,
                details={"last_seen": last_seen},
                source_id=gateway.gateway_id,
            )
            await publish_fanout(self.event_manager, gateway_status_event(
                gateway.gateway_id, EntityStatus.OFFLINE.value, {"last_seen": last_seen}), CHANNEL_GATEWAYS)

    async def _check_nodes(self, cutoff: datetime) -> None:
        # No status to flip, so nothing is written besides the audit entry
        for node in await self.store.list_nodes():
            key = (node.mac, node.gateway_id)
            if not self._is_stale(node.last_seen, cutoff):
                self._reported_nodes.pop(key, None)
                continue
            if self._reported_nodes.get(key) == node.last_seen:
                continue

            self._reported_nodes[key] = node.last_seen
            last_seen = isoformat(node.last_seen)
            logger.debug(f"Node {node.node_name} ({node.mac}) inactive (last seen: {last_seen})")
            await self.audit.try_record(
                LogCategory.NODE,
                f"Node {node.node_name} ({node.mac}) inactive (last seen: {last_seen})",
                level=LogLevel.WARNING,
                details={"gateway_id": node.gateway_id, "last_seen": last_seen},
                source_id=node.mac,
            )
