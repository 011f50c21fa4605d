"""Tests for the liveness monitor and periodic timers."""
import asyncio
from datetime import timedelta, timezone

import pytest

from wafsync.models.cluster import SlaveStatus
from wafsync.services.cluster.liveness import LivenessMonitor
from wafsync.services.cluster.scheduler import PeriodicTask


class TestLivenessMonitor:
    """Tests for LivenessMonitor.tick."""

    @pytest.mark.asyncio
    async def test_stale_node_goes_offline_fresh_node_stays(self, registry, clock):
        monitor = LivenessMonitor(registry, stale_after=300, clock=clock)
        stale = await registry.register("stale", "10.0.0.1")
        fresh = await registry.register("fresh", "10.0.0.2")
        await registry.mark_seen(stale.id, clock() - timedelta(minutes=6))
        await registry.mark_seen(fresh.id, clock() - timedelta(minutes=4))

        assert await monitor.tick() == 1

        assert (await registry.get(stale.id)).status == SlaveStatus.OFFLINE.value
        assert (await registry.get(fresh.id)).status == SlaveStatus.ONLINE.value

    @pytest.mark.asyncio
    async def test_tick_never_touches_last_seen(self, registry, clock):
        monitor = LivenessMonitor(registry, clock=clock)
        node = await registry.register("stale", "10.0.0.1")
        seen_at = clock() - timedelta(minutes=30)
        await registry.mark_seen(node.id, seen_at)

        await monitor.tick()
        await monitor.tick()

        node = await registry.get(node.id)
        assert node.status == SlaveStatus.OFFLINE.value
        assert node.last_seen.replace(tzinfo=timezone.utc) == seen_at

    @pytest.mark.asyncio
    async def test_node_demoted_once_clock_passes_threshold(self, registry, clock):
        monitor = LivenessMonitor(registry, clock=clock)
        node = await registry.register("edge-1", "10.0.0.1")
        await registry.mark_seen(node.id, clock())

        clock.advance(minutes=4)
        assert await monitor.tick() == 0
        clock.advance(minutes=2)
        assert await monitor.tick() == 1

    @pytest.mark.asyncio
    async def test_start_runs_first_tick_immediately(self, registry, clock):
        monitor = LivenessMonitor(registry, interval=3600, clock=clock)
        node = await registry.register("stale", "10.0.0.1")
        await registry.mark_seen(node.id, clock() - timedelta(minutes=6))

        monitor.start()
        try:
            for _ in range(100):
                if (await registry.get(node.id)).status == SlaveStatus.OFFLINE.value:
                    break
                await asyncio.sleep(0.01)
        finally:
            await monitor.stop()

        assert (await registry.get(node.id)).status == SlaveStatus.OFFLINE.value
        assert monitor.running is False


class TestPeriodicTask:
    """Tests for PeriodicTask lifecycle."""

    @pytest.mark.asyncio
    async def test_runs_immediately_then_on_interval(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("test", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert len(calls) >= 2
        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count

    @pytest.mark.asyncio
    async def test_delayed_start(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("test", 3600, tick, run_immediately=False)
        task.start()
        await asyncio.sleep(0.02)
        await task.stop()

        assert calls == []

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_stop_loop(self):
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("test", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        assert task.running
        await task.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_tick(self):
        started = asyncio.Event()
        finished = []

        async def tick():
            started.set()
            await asyncio.sleep(0.05)
            finished.append(1)

        task = PeriodicTask("test", 3600, tick)
        task.start()
        await started.wait()
        await task.stop()

        assert finished == [1]
        assert task.running is False
