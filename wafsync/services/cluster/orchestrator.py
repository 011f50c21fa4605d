"""
Sync Orchestrator.

Drives one sync attempt at a time per target through

    Idle -> Requesting -> (Unchanged | Applying) -> (Success | Failed | Partial)

Pull: a slave asks its master for the snapshot, short-circuiting when the
master still has the hash the slave last applied.
Push: a master sends its snapshot to one or all registered slaves; targets
are independent of each other.

Every failure is caught here, written to SyncHistory and reflected in
SystemConfig (slave) or the node record (master). Nothing escapes into the
scheduling loop except precondition errors raised before an attempt starts.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

import structlog

from wafsync.models.cluster import SlaveNode, SyncDirection, SyncStatus, SyncType, SystemConfig
from wafsync.services.cluster.config_repository import ConfigRepository
from wafsync.services.cluster.errors import (
    ApplyError,
    ClusterSyncError,
    SyncDisabledError,
    SyncInProgressError,
    TransportError,
    Unauthorized,
    ValidationError,
)
from wafsync.services.cluster.reloader import Reloader
from wafsync.services.cluster.slave_registry import SlaveRegistry
from wafsync.services.cluster.snapshot import ConfigSnapshot
from wafsync.services.cluster.sync_history import SyncHistory
from wafsync.services.cluster.system_config import MasterConnection, MasterRole, SlaveRole, SystemConfigStore
from wafsync.services.cluster.transport import SyncClient

logger = structlog.get_logger(__name__)

# In-flight key of the slave's single master relationship
MASTER_TARGET = "master"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one sync attempt."""

    status: SyncStatus
    log_id: Optional[int]
    node_id: Optional[uuid.UUID] = None
    config_hash: Optional[str] = None
    changes: int = 0
    unchanged: bool = False
    error: Optional[str] = None
    latency_ms: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status is SyncStatus.SUCCESS


@dataclass
class SyncAllResult:
    """Fan-out result of pushing to every sync-enabled slave."""

    config_hash: Optional[str] = None
    outcomes: List[SyncOutcome] = field(default_factory=list)
    skipped: List[uuid.UUID] = field(default_factory=list)

    def count(self, status: SyncStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)


@dataclass(frozen=True)
class ConnectionTest:
    connected: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ExportResponse:
    """What the master serves to a pulling slave."""

    hash: str
    snapshot: Optional[ConfigSnapshot] = None

    @property
    def unchanged(self) -> bool:
        return self.snapshot is None


class SyncOrchestrator:
    """Pull and push sync state machine with a per-target in-flight guard."""

    def __init__(
        self,
        registry: SlaveRegistry,
        history: SyncHistory,
        repository: ConfigRepository,
        reloader: Reloader,
        system_config: SystemConfigStore,
        client: SyncClient,
        min_sync_interval: int = 10,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.history = history
        self.repository = repository
        self.reloader = reloader
        self.system_config = system_config
        self.client = client
        self.min_sync_interval = min_sync_interval
        self._clock = clock
        self._in_flight: Set[str] = set()

    # ==========================================================================
    # In-flight guard
    # ==========================================================================

    def is_running(self, target: str) -> bool:
        return target in self._in_flight

    def _acquire(self, target: str, manual: bool) -> bool:
        """
        Claim a target for one attempt.

        Scheduled ticks are skipped while the target is busy; manual
        triggers are rejected.
        """
        if target in self._in_flight:
            if manual:
                raise SyncInProgressError("A sync for this node is already in progress")
            logger.info("Sync tick skipped, attempt already in flight", target=target)
            return False
        self._in_flight.add(target)
        return True

    def _release(self, target: str) -> None:
        self._in_flight.discard(target)

    # ==========================================================================
    # Pull path (slave)
    # ==========================================================================

    async def pull(self, manual: bool = False) -> Optional[SyncOutcome]:
        """
        Pull the master configuration.

        Returns None when a scheduled tick was skipped.

        Raises:
            ValidationError: Node is not a slave or has no master connection
            SyncInProgressError: Manual trigger while a pull is running
        """
        connection = await self._require_connection()
        if not self._acquire(MASTER_TARGET, manual):
            return None
        try:
            return await self._pull(connection)
        finally:
            self._release(MASTER_TARGET)

    async def _pull(self, connection: MasterConnection) -> SyncOutcome:
        known_hash = connection.last_sync_hash or None
        sync_type = SyncType.INCREMENTAL_SYNC if known_hash else SyncType.FULL_SYNC
        log_id = await self.history.record(None, sync_type, SyncDirection.PULL, config_hash=known_hash)
        log = logger.bind(log_id=log_id, master=f"{connection.host}:{connection.port}")

        try:
            export = await self.client.export(
                connection.host,
                connection.port,
                connection.api_key,
                known_hash=known_hash,
            )
            if export.unchanged:
                await self.system_config.mark_connected()
                log.debug("Configuration unchanged", hash=export.hash)
                return await self._finish(log_id, SyncStatus.SUCCESS, config_hash=export.hash, unchanged=True)

            changes = await self.apply_snapshot(export.snapshot)
            await self.system_config.record_sync_success(export.hash)
            log.info("Configuration pulled", hash=export.hash, changes=changes)
            return await self._finish(log_id, SyncStatus.SUCCESS, config_hash=export.hash, changes=changes)

        except ClusterSyncError as e:
            log.warning("Pull failed", error=e.message, code=e.code)
            await self.system_config.record_sync_failure(e.message, connected=not isinstance(e, TransportError))
            return await self._finish(log_id, SyncStatus.FAILED, error=e.message)
        except Exception as e:
            log.exception("Pull failed unexpectedly")
            await self.system_config.record_sync_failure(str(e), connected=False)
            return await self._finish(log_id, SyncStatus.FAILED, error=str(e))

    async def apply_snapshot(self, snapshot: ConfigSnapshot) -> int:
        """
        Write a verified snapshot and reload the proxy.

        Raises:
            ApplyError: Repository failure, or reload failure after a committed
                write (applied=True)
        """
        changes = await self.repository.apply(snapshot)
        result = await self.reloader.apply()
        if not result.success:
            raise ApplyError(f"Configuration applied but reload failed: {result.message}", applied=True, changes=changes)
        return changes

    async def receive_push(self, payload: dict, announced_hash: str) -> SyncOutcome:
        """
        Import a snapshot pushed by the master.

        The outcome is logged locally; failures are re-raised so the master
        sees them on the wire.

        Raises:
            IntegrityError: Payload does not match the announced hash
            ApplyError: Apply or reload failed
            SyncInProgressError: A pull or another import is running
        """
        self._acquire(MASTER_TARGET, manual=True)
        try:
            log_id = await self.history.record(
                None, SyncType.FULL_SYNC, SyncDirection.PUSH, config_hash=announced_hash
            )
            try:
                snapshot = ConfigSnapshot.from_wire(payload, announced_hash)
                changes = await self.apply_snapshot(snapshot)
                await self.system_config.record_sync_success(snapshot.hash)
            except ClusterSyncError as e:
                logger.warning("Pushed configuration rejected", log_id=log_id, error=e.message, code=e.code)
                await self.system_config.record_sync_failure(e.message, connected=True)
                status = SyncStatus.PARTIAL if isinstance(e, ApplyError) and e.applied else SyncStatus.FAILED
                changes = e.changes if isinstance(e, ApplyError) else 0
                await self._finish(log_id, status, changes=changes, error=e.message)
                raise
            except Exception as e:
                logger.exception("Pushed configuration failed unexpectedly", log_id=log_id)
                await self.system_config.record_sync_failure(str(e), connected=True)
                await self._finish(log_id, SyncStatus.FAILED, error=str(e))
                raise

            logger.info("Pushed configuration imported", log_id=log_id, hash=snapshot.hash, changes=changes)
            return await self._finish(log_id, SyncStatus.SUCCESS, config_hash=snapshot.hash, changes=changes)
        finally:
            self._release(MASTER_TARGET)

    async def connect_master(self, host: str, port: int, api_key: str, sync_interval: int) -> SystemConfig:
        """
        Test and store the master connection.

        The connection is stored even when the test fails; the error is kept
        for the operator.
        """
        host = (host or "").strip()
        if not host:
            raise ValidationError("Master host is required")
        if not api_key:
            raise ValidationError("Master API key is required")
        if not 1 <= port <= 65535:
            raise ValidationError("Port must be between 1 and 65535")
        if sync_interval < self.min_sync_interval:
            raise ValidationError(f"Sync interval must be at least {self.min_sync_interval} seconds")
        if not isinstance(await self.system_config.resolve_role(self.registry), SlaveRole):
            raise ValidationError('Cannot connect to master. Node mode must be "slave".')

        test = await self._probe_master(host, port, api_key)
        config = await self.system_config.save_master_connection(
            host, port, api_key, sync_interval, connected=test.connected, error=test.error
        )
        logger.info("Master connection saved", master=f"{host}:{port}", connected=test.connected)
        return config

    async def test_master_connection(self) -> ConnectionTest:
        connection = await self._require_connection()
        test = await self._probe_master(connection.host, connection.port, connection.api_key)
        if test.connected:
            await self.system_config.mark_connected()
        else:
            await self.system_config.record_sync_failure(test.error or "Connection failed", connected=False)
        return test

    async def _probe_master(self, host: str, port: int, api_key: str) -> ConnectionTest:
        try:
            health = await self.client.check_master_health(host, port, api_key)
        except ClusterSyncError as e:
            logger.warning("Master connection test failed", master=f"{host}:{port}", error=e.message)
            return ConnectionTest(connected=False, error=e.message)
        return ConnectionTest(connected=True, latency_ms=health.latency_ms)

    async def _require_connection(self) -> MasterConnection:
        role = await self.system_config.resolve_role(self.registry)
        if not isinstance(role, SlaveRole):
            raise ValidationError('Node mode must be "slave" to sync from a master')
        if role.connection is None:
            raise ValidationError("Not connected to a master")
        return role.connection

    # ==========================================================================
    # Push path (master)
    # ==========================================================================

    async def push(
        self,
        node_id: uuid.UUID,
        snapshot: Optional[ConfigSnapshot] = None,
        manual: bool = False,
    ) -> Optional[SyncOutcome]:
        """
        Push the current configuration to one slave.

        Returns None when a scheduled tick was skipped.

        Raises:
            ValidationError: Node is not a master or sync is disabled for the slave
            NotFoundError: Unknown slave
            SyncInProgressError: Manual trigger while a push to the slave is running
        """
        await self._require_master()
        node = await self.registry.get(node_id)
        if not node.sync_enabled:
            raise ValidationError(f"Sync is disabled for slave node {node.name}")
        return await self._push_node(node, snapshot, manual)

    async def push_all(self) -> SyncAllResult:
        """
        Push one shared snapshot to every sync-enabled slave concurrently.

        A busy slave is skipped. One slave's failure never affects another.
        """
        await self._require_master()
        nodes = await self.registry.list_sync_enabled()
        result = SyncAllResult()
        if not nodes:
            return result

        snapshot = await self.repository.build_snapshot()
        result.config_hash = snapshot.hash
        outcomes = await asyncio.gather(
            *(self._push_node(node, snapshot, manual=False) for node in nodes),
            return_exceptions=True,
        )

        for node, outcome in zip(nodes, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                # No log row could be written or closed for this target
                logger.error("Push failed before it was logged", node_id=str(node.id), error=str(outcome))
                outcome = SyncOutcome(status=SyncStatus.FAILED, log_id=None, node_id=node.id, error=str(outcome))
            if outcome is None:
                result.skipped.append(node.id)
            else:
                result.outcomes.append(outcome)

        logger.info(
            "Sync to all slaves completed",
            hash=snapshot.hash,
            total=len(nodes),
            success=result.count(SyncStatus.SUCCESS),
            failed=result.count(SyncStatus.FAILED),
            partial=result.count(SyncStatus.PARTIAL),
            skipped=len(result.skipped),
        )
        return result

    async def _push_node(
        self,
        node: SlaveNode,
        snapshot: Optional[ConfigSnapshot],
        manual: bool,
    ) -> Optional[SyncOutcome]:
        target = str(node.id)
        if not self._acquire(target, manual):
            return None
        try:
            return await self._push(node, snapshot)
        finally:
            self._release(target)

    async def _push(self, node: SlaveNode, snapshot: Optional[ConfigSnapshot]) -> SyncOutcome:
        log_id = await self.history.record(
            node.id,
            SyncType.FULL_SYNC,
            SyncDirection.PUSH,
            config_hash=snapshot.hash if snapshot else None,
        )
        log = logger.bind(log_id=log_id, node_id=str(node.id), slave=f"{node.host}:{node.port}")

        try:
            return await self._deliver(log_id, node, snapshot, log)
        except Exception as e:
            log.exception("Push failed unexpectedly")
            return await self._finish(log_id, SyncStatus.FAILED, node_id=node.id, error=str(e))

    async def _deliver(self, log_id: int, node: SlaveNode, snapshot: Optional[ConfigSnapshot], log) -> SyncOutcome:
        if snapshot is None:
            snapshot = await self.repository.build_snapshot()
        try:
            result = await self.client.push(node.host, node.port, node.api_key, snapshot)
        except ApplyError as e:
            if not e.applied:
                log.warning("Push failed", error=e.message, code=e.code)
                return await self._finish(log_id, SyncStatus.FAILED, node_id=node.id, error=e.message)
            # Slave wrote the configuration but could not reload its proxy
            log.warning("Push partially applied", error=e.message, changes=e.changes)
            await self.registry.mark_seen(node.id, self._clock(), config_hash=snapshot.hash)
            return await self._finish(
                log_id,
                SyncStatus.PARTIAL,
                node_id=node.id,
                config_hash=snapshot.hash,
                changes=e.changes,
                error=e.message,
            )
        except ClusterSyncError as e:
            log.warning("Push failed", error=e.message, code=e.code)
            return await self._finish(log_id, SyncStatus.FAILED, node_id=node.id, error=e.message)

        await self.registry.mark_seen(node.id, self._clock(), config_hash=result.hash)
        log.info("Configuration pushed", hash=result.hash, changes=result.changes)
        return await self._finish(
            log_id,
            SyncStatus.SUCCESS,
            node_id=node.id,
            config_hash=result.hash,
            changes=result.changes,
        )

    async def check_node(self, node_id: uuid.UUID) -> SyncOutcome:
        """Probe a slave's health endpoint and record it as a health_check log."""
        await self._require_master()
        node = await self.registry.get(node_id)
        log_id = await self.history.record(node.id, SyncType.HEALTH_CHECK, SyncDirection.PUSH)

        try:
            health = await self.client.check_slave_health(node.host, node.port, node.api_key)
        except ClusterSyncError as e:
            logger.info("Slave health check failed", node_id=str(node.id), error=e.message)
            return await self._finish(log_id, SyncStatus.FAILED, node_id=node.id, error=e.message)

        await self.registry.mark_seen(node.id, self._clock())
        return await self._finish(
            log_id,
            SyncStatus.SUCCESS,
            node_id=node.id,
            config_hash=node.config_hash,
            latency_ms=health.latency_ms,
        )

    # ==========================================================================
    # Export (master side of a pull)
    # ==========================================================================

    async def serve_export(self, node: SlaveNode, known_hash: Optional[str]) -> ExportResponse:
        """
        Build the export for an authenticated slave.

        The contact doubles as a heartbeat for that slave.
        """
        await self._require_master()
        snapshot = await self.repository.build_snapshot()
        await self.registry.mark_seen(node.id, self._clock(), config_hash=snapshot.hash)
        if known_hash and known_hash == snapshot.hash:
            return ExportResponse(hash=snapshot.hash)
        logger.info("Configuration exported", node_id=str(node.id), hash=snapshot.hash)
        return ExportResponse(hash=snapshot.hash, snapshot=snapshot)

    async def record_contact(self, node: SlaveNode) -> None:
        """Heartbeat from an authenticated slave."""
        await self.registry.mark_seen(node.id, self._clock())

    async def authenticate_slave(self, api_key: Optional[str]) -> SlaveNode:
        """
        Resolve the slave presenting api_key.

        Raises:
            Unauthorized: Unknown or missing key
            SyncDisabledError: Sync is disabled for the slave
        """
        node = await self.registry.get_by_api_key(api_key or "")
        if node is None:
            raise Unauthorized("Invalid API key")
        if not node.sync_enabled:
            raise SyncDisabledError("Node sync is disabled")
        return node

    async def _require_master(self) -> MasterRole:
        role = await self.system_config.resolve_role(self.registry)
        if not isinstance(role, MasterRole):
            raise ValidationError('Node mode must be "master" to manage slaves')
        return role

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _finish(
        self,
        log_id: int,
        status: SyncStatus,
        node_id: Optional[uuid.UUID] = None,
        config_hash: Optional[str] = None,
        changes: int = 0,
        unchanged: bool = False,
        error: Optional[str] = None,
        latency_ms: Optional[int] = None,
    ) -> SyncOutcome:
        await self.history.complete(log_id, status, changes_count=changes, error=error, config_hash=config_hash)
        return SyncOutcome(
            status=status,
            log_id=log_id,
            node_id=node_id,
            config_hash=config_hash,
            changes=changes,
            unchanged=unchanged,
            error=error,
            latency_ms=latency_ms,
        )
