"""Tests for SyncScheduler timer management."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from wafsync.models.cluster import NodeMode
from wafsync.services.cluster.scheduler import SyncScheduler


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock()
    orchestrator.pull = AsyncMock(return_value=None)
    orchestrator.push = AsyncMock(return_value=None)
    return orchestrator


async def connect(system_config, sync_interval: int = 60) -> None:
    await system_config.set_mode(NodeMode.SLAVE)
    await system_config.save_master_connection("master.local", 3001, "k" * 64, sync_interval, connected=True)


async def wait_for_calls(mock: AsyncMock, count: int) -> None:
    for _ in range(100):
        if mock.await_count >= count:
            return
        await asyncio.sleep(0.01)


class TestSyncScheduler:
    @pytest.mark.asyncio
    async def test_master_without_auto_push_has_no_timers(self, orchestrator, system_config, registry):
        await registry.register("edge-1", "10.0.0.5")
        scheduler = SyncScheduler(orchestrator, system_config, registry)

        await scheduler.refresh()

        assert scheduler.timers == {}

    @pytest.mark.asyncio
    async def test_connected_slave_gets_pull_timer(self, orchestrator, system_config, registry):
        await connect(system_config, sync_interval=30)
        scheduler = SyncScheduler(orchestrator, system_config, registry)

        await scheduler.refresh()
        try:
            [timer] = scheduler.timers.values()
            assert timer.interval == 30
            await wait_for_calls(orchestrator.pull, 1)
            orchestrator.pull.assert_awaited_with(manual=False)
        finally:
            await scheduler.stop()

        assert scheduler.timers == {}

    @pytest.mark.asyncio
    async def test_slave_without_connection_has_no_timer(self, orchestrator, system_config, registry):
        await system_config.set_mode(NodeMode.SLAVE)
        scheduler = SyncScheduler(orchestrator, system_config, registry)

        await scheduler.refresh()

        assert scheduler.timers == {}

    @pytest.mark.asyncio
    async def test_interval_change_restarts_timer(self, orchestrator, system_config, registry):
        await connect(system_config, sync_interval=60)
        scheduler = SyncScheduler(orchestrator, system_config, registry)
        await scheduler.refresh()
        first = scheduler.timers[SyncScheduler.PULL_KEY]

        await connect(system_config, sync_interval=120)
        await scheduler.refresh()
        try:
            second = scheduler.timers[SyncScheduler.PULL_KEY]
            assert second is not first
            assert second.interval == 120
            assert first.running is False
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_auto_push_timers_follow_registry(self, orchestrator, system_config, registry):
        enabled = await registry.register("edge-1", "10.0.0.5", sync_interval=30)
        disabled = await registry.register("edge-2", "10.0.0.6")
        await registry.update(disabled.id, sync_enabled=False)
        scheduler = SyncScheduler(orchestrator, system_config, registry, auto_push=True)

        await scheduler.refresh()
        try:
            assert set(scheduler.timers) == {f"push:{enabled.id}"}
            assert scheduler.timers[f"push:{enabled.id}"].interval == 30
            # Push timers wait one interval before the first tick
            orchestrator.push.assert_not_awaited()

            await registry.delete(enabled.id)
            await scheduler.refresh()
            assert scheduler.timers == {}
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_switch_to_master_stops_pull_timer(self, orchestrator, system_config, registry):
        await connect(system_config)
        scheduler = SyncScheduler(orchestrator, system_config, registry)
        await scheduler.refresh()
        timer = scheduler.timers[SyncScheduler.PULL_KEY]

        await system_config.set_mode(NodeMode.MASTER)
        await scheduler.refresh()

        assert scheduler.timers == {}
        assert timer.running is False
