"""
Sync timers.

PeriodicTask is a cancellable asyncio timer owning its own lifecycle.
SyncScheduler keeps the set of running sync timers in line with the node role:
- slave: one pull timer at the master connection's interval
- master (auto-push enabled): one push timer per sync-enabled slave
"""

import asyncio
import functools
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from wafsync.services.cluster.slave_registry import SlaveRegistry
from wafsync.services.cluster.system_config import MasterRole, SlaveRole, SystemConfigStore

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """
    Run a coroutine function every `interval` seconds.

    A failing tick is logged and never stops the loop. stop() prevents
    further ticks and waits for an in-flight tick to finish.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.debug("Periodic task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.debug("Periodic task stopped", task=self.name)

    async def run_once(self) -> None:
        """Run a single tick outside the timer."""
        try:
            await self.func()
        except Exception:
            logger.exception("Periodic task failed", task=self.name)

    async def _run(self) -> None:
        if not self.run_immediately and await self._wait():
            return
        while not self._stop_event.is_set():
            await self.run_once()
            if await self._wait():
                return

    async def _wait(self) -> bool:
        """Sleep one interval. Returns True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True


class SyncScheduler:
    """Keeps sync timers consistent with the current node role."""

    PULL_KEY = "pull"

    def __init__(
        self,
        orchestrator,
        system_config: SystemConfigStore,
        registry: SlaveRegistry,
        auto_push: bool = False,
    ):
        self.orchestrator = orchestrator
        self.system_config = system_config
        self.registry = registry
        self.auto_push = auto_push
        self._timers: Dict[str, PeriodicTask] = {}
        self._lock = asyncio.Lock()

    @property
    def timers(self) -> Dict[str, PeriodicTask]:
        return dict(self._timers)

    async def refresh(self) -> None:
        """Start, restart or stop timers after a mode, connection or registry change."""
        async with self._lock:
            desired = await self._desired_timers()

            for key, timer in list(self._timers.items()):
                if key not in desired or desired[key][0] != timer.interval:
                    await timer.stop()
                    del self._timers[key]

            for key, (interval, func, run_immediately) in desired.items():
                if key in self._timers:
                    continue
                timer = PeriodicTask(key, interval, func, run_immediately=run_immediately)
                timer.start()
                self._timers[key] = timer

        logger.info("Sync timers refreshed", timers=sorted(self._timers))

    async def stop(self) -> None:
        async with self._lock:
            for timer in self._timers.values():
                await timer.stop()
            self._timers.clear()

    async def _desired_timers(self) -> Dict[str, Tuple[int, Callable[[], Awaitable[Any]], bool]]:
        role = await self.system_config.resolve_role(self.registry)
        desired: Dict[str, Tuple[int, Callable[[], Awaitable[Any]], bool]] = {}

        if isinstance(role, SlaveRole):
            if role.connection is not None:
                desired[self.PULL_KEY] = (role.connection.sync_interval, self._pull_tick, True)
        elif isinstance(role, MasterRole) and self.auto_push:
            for node in await role.registry.list_sync_enabled():
                desired[f"push:{node.id}"] = (
                    node.sync_interval,
                    functools.partial(self._push_tick, node.id),
                    False,
                )
        return desired

    async def _pull_tick(self) -> None:
        await self.orchestrator.pull(manual=False)

    async def _push_tick(self, node_id: uuid.UUID) -> None:
        await self.orchestrator.push(node_id, manual=False)
