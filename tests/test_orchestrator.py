"""
Tests for the sync orchestrator state machine.

Stores run on SQLite; the transport client and the config repository are
mocked so every branch of pull and push can be driven directly.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from wafsync.models.cluster import NodeMode, SlaveStatus, SyncDirection, SyncStatus, SyncType
from wafsync.services.cluster.errors import (
    ApplyError,
    IntegrityError,
    SyncInProgressError,
    TransportError,
    Unauthorized,
    ValidationError,
)
from wafsync.services.cluster.orchestrator import SyncOrchestrator
from wafsync.services.cluster.snapshot import ConfigSnapshot
from wafsync.services.cluster.transport import ExportResult, HealthResult, ImportResult
from tests.conftest import StubReloader

MASTER_KEY = "m" * 64

SNAPSHOT_V1 = ConfigSnapshot.seal({"domains": [{"name": "a.example.com", "status": "active", "upstreams": []}]})
SNAPSHOT_V2 = ConfigSnapshot.seal({"domains": [{"name": "b.example.com", "status": "active", "upstreams": []}]})


@pytest.fixture
def repository() -> MagicMock:
    repository = MagicMock()
    repository.build_snapshot = AsyncMock(return_value=SNAPSHOT_V2)
    repository.apply = AsyncMock(return_value=1)
    return repository


@pytest.fixture
def sync_client() -> MagicMock:
    client = MagicMock()
    client.export = AsyncMock(return_value=ExportResult(hash=SNAPSHOT_V2.hash, unchanged=False, snapshot=SNAPSHOT_V2))
    client.push = AsyncMock(return_value=ImportResult(imported=True, hash=SNAPSHOT_V2.hash, changes=1))
    client.check_slave_health = AsyncMock(
        return_value=HealthResult(status="healthy", node_mode="slave", version="1.0.0", latency_ms=3)
    )
    client.check_master_health = AsyncMock(
        return_value=HealthResult(status="healthy", node_mode="master", version="1.0.0", latency_ms=2)
    )
    return client


@pytest.fixture
def reloader() -> StubReloader:
    return StubReloader()


@pytest.fixture
def orchestrator(registry, history, system_config, repository, sync_client, reloader, clock) -> SyncOrchestrator:
    return SyncOrchestrator(registry, history, repository, reloader, system_config, sync_client, clock=clock)


async def become_slave(system_config, last_sync_hash: str = "") -> None:
    await system_config.set_mode(NodeMode.SLAVE)
    await system_config.save_master_connection("master.local", 3001, MASTER_KEY, 60, connected=True)
    if last_sync_hash:
        await system_config.record_sync_success(last_sync_hash)


class TestPull:
    """Tests for the slave pull path."""

    @pytest.mark.asyncio
    async def test_unchanged_pull_writes_nothing(self, orchestrator, system_config, history, repository, sync_client, reloader):
        await become_slave(system_config, last_sync_hash=SNAPSHOT_V1.hash)
        sync_client.export.return_value = ExportResult(hash=SNAPSHOT_V1.hash, unchanged=True)

        outcome = await orchestrator.pull()

        sync_client.export.assert_awaited_once_with("master.local", 3001, MASTER_KEY, known_hash=SNAPSHOT_V1.hash)
        repository.apply.assert_not_awaited()
        assert reloader.calls == 0
        assert outcome.status is SyncStatus.SUCCESS
        assert outcome.unchanged is True
        assert outcome.changes == 0

        [log] = await history.list_by_node(None)
        assert log.status == SyncStatus.SUCCESS.value
        assert log.changes_count == 0
        assert log.type == SyncType.INCREMENTAL_SYNC.value
        assert log.direction == SyncDirection.PULL.value
        assert (await system_config.get()).last_sync_hash == SNAPSHOT_V1.hash

    @pytest.mark.asyncio
    async def test_first_pull_applies_and_advances_hash(self, orchestrator, system_config, history, repository, sync_client, reloader):
        await become_slave(system_config)

        outcome = await orchestrator.pull()

        sync_client.export.assert_awaited_once_with("master.local", 3001, MASTER_KEY, known_hash=None)
        repository.apply.assert_awaited_once_with(SNAPSHOT_V2)
        assert reloader.calls == 1
        assert outcome.status is SyncStatus.SUCCESS
        assert outcome.changes == 1

        config = await system_config.get()
        assert config.last_sync_hash == SNAPSHOT_V2.hash
        assert config.connected is True
        assert config.connection_error is None

        [log] = await history.list_by_node(None)
        assert log.type == SyncType.FULL_SYNC.value
        assert log.config_hash == SNAPSHOT_V2.hash
        assert log.changes_count == 1

    @pytest.mark.asyncio
    async def test_apply_failure_keeps_hash(self, orchestrator, system_config, history, repository):
        await become_slave(system_config, last_sync_hash=SNAPSHOT_V1.hash)
        repository.apply.side_effect = ApplyError("Failed to apply domains: disk full")

        outcome = await orchestrator.pull()

        assert outcome.status is SyncStatus.FAILED
        config = await system_config.get()
        assert config.last_sync_hash == SNAPSHOT_V1.hash
        assert config.connection_error == "Failed to apply domains: disk full"
        assert config.connected is True

        [log] = await history.list_by_node(None)
        assert log.status == SyncStatus.FAILED.value
        assert log.error_message == "Failed to apply domains: disk full"

    @pytest.mark.asyncio
    async def test_reload_failure_keeps_hash(self, orchestrator, system_config, reloader):
        await become_slave(system_config, last_sync_hash=SNAPSHOT_V1.hash)
        reloader.success = False
        reloader.message = "nginx: [emerg] unknown directive"

        outcome = await orchestrator.pull()

        assert outcome.status is SyncStatus.FAILED
        assert "unknown directive" in outcome.error
        assert (await system_config.get()).last_sync_hash == SNAPSHOT_V1.hash

    @pytest.mark.asyncio
    async def test_integrity_failure_is_never_applied(self, orchestrator, system_config, sync_client, repository):
        await become_slave(system_config)
        sync_client.export.side_effect = IntegrityError("Snapshot hash mismatch")

        outcome = await orchestrator.pull()

        assert outcome.status is SyncStatus.FAILED
        repository.apply.assert_not_awaited()
        assert (await system_config.get()).last_sync_hash == ""

    @pytest.mark.asyncio
    async def test_transport_failure_marks_disconnected(self, orchestrator, system_config, sync_client):
        await become_slave(system_config, last_sync_hash=SNAPSHOT_V1.hash)
        sync_client.export.side_effect = TransportError("Request to master timed out after 30.0s")

        outcome = await orchestrator.pull()

        assert outcome.status is SyncStatus.FAILED
        config = await system_config.get()
        assert config.connected is False
        assert "timed out" in config.connection_error
        assert config.last_sync_hash == SNAPSHOT_V1.hash

    @pytest.mark.asyncio
    async def test_failures_do_not_block_next_attempt(self, orchestrator, system_config, sync_client):
        await become_slave(system_config)
        sync_client.export.side_effect = [TransportError("Connection refused"), sync_client.export.return_value]

        first = await orchestrator.pull()
        second = await orchestrator.pull()

        assert first.status is SyncStatus.FAILED
        assert second.status is SyncStatus.SUCCESS
        assert (await system_config.get()).last_sync_hash == SNAPSHOT_V2.hash

    @pytest.mark.asyncio
    async def test_pull_requires_slave_mode(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.pull()

    @pytest.mark.asyncio
    async def test_pull_requires_master_connection(self, orchestrator, system_config):
        await system_config.set_mode(NodeMode.SLAVE)
        with pytest.raises(ValidationError, match="Not connected"):
            await orchestrator.pull()


class TestInFlightGuard:
    """Attempts against the same target are serialized."""

    @pytest.mark.asyncio
    async def test_overlapping_attempts_skip_or_reject(self, orchestrator, system_config, sync_client):
        await become_slave(system_config)
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_export(*args, **kwargs):
            started.set()
            await release.wait()
            return ExportResult(hash=SNAPSHOT_V1.hash, unchanged=True)

        sync_client.export.side_effect = slow_export
        running = asyncio.create_task(orchestrator.pull())
        await started.wait()

        assert await orchestrator.pull(manual=False) is None
        with pytest.raises(SyncInProgressError):
            await orchestrator.pull(manual=True)

        release.set()
        outcome = await running
        assert outcome.status is SyncStatus.SUCCESS
        assert sync_client.export.await_count == 1
        assert orchestrator.is_running("master") is False


class TestPush:
    """Tests for the master push path."""

    @pytest.mark.asyncio
    async def test_push_success_marks_node_seen(self, orchestrator, registry, history, sync_client, clock):
        node = await registry.register("edge-1", "10.0.0.5")

        outcome = await orchestrator.push(node.id, manual=True)

        sync_client.push.assert_awaited_once_with("10.0.0.5", 3001, node.api_key, SNAPSHOT_V2)
        assert outcome.status is SyncStatus.SUCCESS
        node = await registry.get(node.id)
        assert node.status == SlaveStatus.ONLINE.value
        assert node.config_hash == SNAPSHOT_V2.hash

        [log] = await history.list_by_node(node.id)
        assert log.type == SyncType.FULL_SYNC.value
        assert log.direction == SyncDirection.PUSH.value
        assert log.changes_count == 1

    @pytest.mark.asyncio
    async def test_push_unauthorized_leaves_last_seen(self, orchestrator, registry, history, sync_client):
        node = await registry.register("edge-1", "10.0.0.5")
        sync_client.push.side_effect = Unauthorized("Invalid API key")

        outcome = await orchestrator.push(node.id)

        assert outcome.status is SyncStatus.FAILED
        node = await registry.get(node.id)
        assert node.last_seen is None
        assert node.status == SlaveStatus.OFFLINE.value
        [log] = await history.list_by_node(node.id)
        assert log.error_message == "Invalid API key"

    @pytest.mark.asyncio
    async def test_reload_failure_on_slave_is_partial(self, orchestrator, registry, sync_client):
        node = await registry.register("edge-1", "10.0.0.5")
        sync_client.push.side_effect = ApplyError("nginx reload failed", applied=True, changes=2)

        outcome = await orchestrator.push(node.id)

        assert outcome.status is SyncStatus.PARTIAL
        assert outcome.changes == 2
        assert (await registry.get(node.id)).status == SlaveStatus.ONLINE.value

    @pytest.mark.asyncio
    async def test_push_to_disabled_node_is_rejected(self, orchestrator, registry):
        node = await registry.register("edge-1", "10.0.0.5")
        await registry.update(node.id, sync_enabled=False)

        with pytest.raises(ValidationError, match="disabled"):
            await orchestrator.push(node.id)

    @pytest.mark.asyncio
    async def test_push_requires_master_mode(self, orchestrator, registry, system_config):
        node = await registry.register("edge-1", "10.0.0.5")
        await system_config.set_mode(NodeMode.SLAVE)

        with pytest.raises(ValidationError):
            await orchestrator.push(node.id)

    @pytest.mark.asyncio
    async def test_push_all_builds_snapshot_once_and_isolates_failures(self, orchestrator, registry, repository, sync_client):
        nodes = [await registry.register(f"edge-{i}", f"10.0.0.{i}") for i in range(1, 4)]

        async def push(host, port, api_key, snapshot):
            if host == "10.0.0.2":
                raise TransportError("Connection refused")
            return ImportResult(imported=True, hash=snapshot.hash, changes=0)

        sync_client.push.side_effect = push

        result = await orchestrator.push_all()

        repository.build_snapshot.assert_awaited_once()
        assert result.config_hash == SNAPSHOT_V2.hash
        assert result.count(SyncStatus.SUCCESS) == 2
        assert result.count(SyncStatus.FAILED) == 1
        failed = [outcome for outcome in result.outcomes if outcome.status is SyncStatus.FAILED]
        assert failed[0].node_id == nodes[1].id

    @pytest.mark.asyncio
    async def test_push_all_survives_database_error_for_one_node(self, orchestrator, registry, history, monkeypatch):
        nodes = [await registry.register(f"edge-{i}", f"10.0.0.{i}") for i in range(1, 4)]
        broken = nodes[1]
        mark_seen = registry.mark_seen

        async def flaky_mark_seen(node_id, when, config_hash=None):
            if node_id == broken.id:
                raise OperationalError("UPDATE slave_nodes", {}, Exception("database is locked"))
            return await mark_seen(node_id, when, config_hash=config_hash)

        monkeypatch.setattr(registry, "mark_seen", flaky_mark_seen)

        result = await orchestrator.push_all()

        assert result.count(SyncStatus.SUCCESS) == 2
        assert result.count(SyncStatus.FAILED) == 1
        [log] = await history.list_by_node(broken.id)
        assert log.status == SyncStatus.FAILED.value
        assert "database is locked" in log.error_message

    @pytest.mark.asyncio
    async def test_push_all_reports_node_whose_log_cannot_be_opened(self, orchestrator, registry, history, monkeypatch):
        nodes = [await registry.register(f"edge-{i}", f"10.0.0.{i}") for i in range(1, 4)]
        broken = nodes[2]
        record = history.record

        async def flaky_record(node_id, sync_type, direction, config_hash=None):
            if node_id == broken.id:
                raise OperationalError("INSERT INTO sync_logs", {}, Exception("disk I/O error"))
            return await record(node_id, sync_type, direction, config_hash=config_hash)

        monkeypatch.setattr(history, "record", flaky_record)

        result = await orchestrator.push_all()

        assert result.count(SyncStatus.SUCCESS) == 2
        [failed] = [outcome for outcome in result.outcomes if outcome.status is SyncStatus.FAILED]
        assert failed.node_id == broken.id
        assert failed.log_id is None
        assert not orchestrator.is_running(str(broken.id))

    @pytest.mark.asyncio
    async def test_push_all_skips_disabled_nodes(self, orchestrator, registry, sync_client):
        await registry.register("edge-1", "10.0.0.1")
        disabled = await registry.register("edge-2", "10.0.0.2")
        await registry.update(disabled.id, sync_enabled=False)

        result = await orchestrator.push_all()

        assert len(result.outcomes) == 1
        assert sync_client.push.await_count == 1


class TestHealthAndConnection:
    @pytest.mark.asyncio
    async def test_check_node_records_health_check(self, orchestrator, registry, history):
        node = await registry.register("edge-1", "10.0.0.5")

        outcome = await orchestrator.check_node(node.id)

        assert outcome.succeeded
        assert outcome.latency_ms == 3
        assert (await registry.get(node.id)).status == SlaveStatus.ONLINE.value
        [log] = await history.list_by_node(node.id)
        assert log.type == SyncType.HEALTH_CHECK.value
        assert log.status == SyncStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_failed_check_keeps_node_offline(self, orchestrator, registry, sync_client):
        node = await registry.register("edge-1", "10.0.0.5")
        sync_client.check_slave_health.side_effect = TransportError("Connection refused")

        outcome = await orchestrator.check_node(node.id)

        assert outcome.status is SyncStatus.FAILED
        assert (await registry.get(node.id)).last_seen is None

    @pytest.mark.asyncio
    async def test_connect_master_stores_failed_connection(self, orchestrator, system_config, sync_client):
        await system_config.set_mode(NodeMode.SLAVE)
        sync_client.check_master_health.side_effect = Unauthorized("Invalid API key")

        config = await orchestrator.connect_master("master.local", 3001, MASTER_KEY, 60)

        assert config.master_host == "master.local"
        assert config.connected is False
        assert config.connection_error == "Invalid API key"

    @pytest.mark.asyncio
    async def test_connect_master_validates_interval(self, orchestrator, system_config):
        await system_config.set_mode(NodeMode.SLAVE)
        with pytest.raises(ValidationError):
            await orchestrator.connect_master("master.local", 3001, MASTER_KEY, 5)

    @pytest.mark.asyncio
    async def test_connect_master_requires_slave_mode(self, orchestrator, sync_client):
        with pytest.raises(ValidationError, match="slave"):
            await orchestrator.connect_master("master.local", 3001, MASTER_KEY, 60)
        sync_client.check_master_health.assert_not_awaited()
