"""
Liveness Monitor.

Demotes slaves that have not been heard from within the staleness window.
last_seen is only ever advanced by sync and heartbeat activity, never here.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from wafsync.services.cluster.scheduler import PeriodicTask
from wafsync.services.cluster.slave_registry import SlaveRegistry

logger = structlog.get_logger(__name__)


class LivenessMonitor:
    def __init__(
        self,
        registry: SlaveRegistry,
        interval: float = 60,
        stale_after: float = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.interval = interval
        self.stale_after = timedelta(seconds=stale_after)
        self._clock = clock
        self._task: Optional[PeriodicTask] = None

    async def tick(self) -> int:
        """Mark stale online slaves offline. Returns the number demoted."""
        cutoff = self._clock() - self.stale_after
        stale = await self.registry.find_stale(cutoff)
        if not stale:
            return 0

        count = await self.registry.mark_offline([node.id for node in stale])
        logger.info("Stale slave nodes marked offline", count=count, nodes=[node.name for node in stale])
        return count

    def start(self) -> None:
        if self._task is None:
            self._task = PeriodicTask("liveness", self.interval, self.tick, run_immediately=True)
        self._task.start()

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running
