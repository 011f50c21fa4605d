"""
Cluster runtime container.

Builds every cluster sync component from Settings and owns their lifecycle:
database engine, stores, transport client, orchestrator, liveness monitor and
sync timers.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from wafsync.core.config import Settings
from wafsync.core.database import SessionFactory, close_db, create_engine, create_session_factory, init_db
from wafsync.services.cluster.config_repository import ConfigRepository, SqlConfigRepository
from wafsync.services.cluster.liveness import LivenessMonitor
from wafsync.services.cluster.orchestrator import SyncOrchestrator
from wafsync.services.cluster.reloader import Reloader, get_reloader
from wafsync.services.cluster.scheduler import SyncScheduler
from wafsync.services.cluster.slave_registry import SlaveRegistry
from wafsync.services.cluster.sync_history import SyncHistory
from wafsync.services.cluster.system_config import MasterRole, SystemConfigStore
from wafsync.services.cluster.transport import SyncClient

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClusterRuntime:
    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    registry: SlaveRegistry
    history: SyncHistory
    system_config: SystemConfigStore
    repository: ConfigRepository
    reloader: Reloader
    client: SyncClient
    orchestrator: SyncOrchestrator
    liveness: LivenessMonitor
    scheduler: SyncScheduler

    async def startup(self) -> None:
        """Create tables, close orphaned logs and start timers."""
        await init_db(self.engine)
        await self.history.fail_orphaned()
        config = await self.system_config.get()
        logger.info("Cluster runtime started", node_mode=config.node_mode)

        if self.settings.node_sync.scheduler_enabled:
            await self.refresh_timers()

    async def refresh_timers(self) -> None:
        """Align timers with the current node role."""
        if not self.settings.node_sync.scheduler_enabled:
            return

        role = await self.system_config.resolve_role(self.registry)
        if isinstance(role, MasterRole):
            self.liveness.start()
        else:
            await self.liveness.stop()
        await self.scheduler.refresh()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.liveness.stop()
        await close_db(self.engine)
        logger.info("Cluster runtime stopped")


def build_runtime(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    reloader: Optional[Reloader] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ClusterRuntime:
    """Wire the cluster sync components for one node."""
    node_sync = settings.node_sync
    engine = engine or create_engine(settings.database)
    session_factory = create_session_factory(engine)

    registry = SlaveRegistry(
        session_factory,
        default_port=node_sync.default_slave_port,
        default_sync_interval=node_sync.default_sync_interval,
        min_sync_interval=node_sync.min_sync_interval,
    )
    history = SyncHistory(session_factory, clock=clock)
    system_config = SystemConfigStore(
        session_factory,
        default_sync_interval=node_sync.default_sync_interval,
        clock=clock,
    )
    repository = SqlConfigRepository(session_factory)
    reloader = reloader or get_reloader(settings.nginx)
    client = SyncClient(
        connect_timeout=node_sync.connect_timeout,
        transfer_timeout=node_sync.transfer_timeout,
        scheme=node_sync.scheme,
        verify_tls=node_sync.verify_tls,
        transport=transport,
    )
    orchestrator = SyncOrchestrator(
        registry,
        history,
        repository,
        reloader,
        system_config,
        client,
        min_sync_interval=node_sync.min_sync_interval,
        clock=clock,
    )
    liveness = LivenessMonitor(
        registry,
        interval=node_sync.liveness_check_interval,
        stale_after=node_sync.stale_after,
        clock=clock,
    )
    scheduler = SyncScheduler(orchestrator, system_config, registry, auto_push=node_sync.master_auto_push)

    return ClusterRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        history=history,
        system_config=system_config,
        repository=repository,
        reloader=reloader,
        client=client,
        orchestrator=orchestrator,
        liveness=liveness,
        scheduler=scheduler,
    )
