"""Pytest fixtures for cluster sync tests."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from wafsync.core.config import (
    DatabaseSettings,
    NginxSettings,
    NodeSyncSettings,
    SecuritySettings,
    Settings,
)
from wafsync.core.database import create_session_factory, init_db, session_scope
from wafsync.main import create_app
from wafsync.models.cluster import NodeMode, SlaveNode
from wafsync.models.waf import Domain
from wafsync.services.cluster.reloader import ReloadResult
from wafsync.services.cluster.runtime import ClusterRuntime, build_runtime
from wafsync.services.cluster.slave_registry import SlaveRegistry
from wafsync.services.cluster.sync_history import SyncHistory
from wafsync.services.cluster.system_config import SystemConfigStore

ADMIN_TOKEN = "test-admin-token-0123456789abcdef0123456789"


# --- Helpers ---

class FakeClock:
    """Deterministic clock for services that take a `clock` callable."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubReloader:
    """Reloader that records calls instead of touching nginx."""

    def __init__(self, success: bool = True, message: str = "reloaded"):
        self.success = success
        self.message = message
        self.calls = 0

    async def apply(self) -> ReloadResult:
        self.calls += 1
        return ReloadResult(success=self.success, message=self.message)


class ClusterTransport(httpx.AsyncBaseTransport):
    """Routes requests to in-process node apps by host:port."""

    def __init__(self):
        self.routes: Dict[str, ASGITransport] = {}

    def register(self, host: str, port: int, app) -> None:
        self.routes[f"{host}:{port}"] = ASGITransport(app=app)

    def unregister(self, host: str, port: int) -> None:
        self.routes.pop(f"{host}:{port}", None)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        target = f"{request.url.host}:{request.url.port}"
        transport = self.routes.get(target)
        if transport is None:
            raise httpx.ConnectError(f"Connection refused: {target}", request=request)
        return await transport.handle_async_request(request)


def sqlite_engine(path: Path) -> AsyncEngine:
    """
    File-backed SQLite engine.

    Every transaction takes the write lock up front so concurrent sessions
    queue on the busy timeout instead of failing to upgrade a read lock.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_settings(db_path: Path, **node_sync) -> Settings:
    node_sync.setdefault("scheduler_enabled", False)
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{db_path}"),
        security=SecuritySettings(admin_api_token=ADMIN_TOKEN),
        node_sync=NodeSyncSettings(**node_sync),
        nginx=NginxSettings(reload_enabled=False),
    )


@dataclass
class Node:
    """One in-process cluster node."""

    name: str
    host: str
    port: int
    runtime: ClusterRuntime
    reloader: StubReloader
    api: AsyncClient
    app: Any = None


# --- Clock Fixtures ---

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


# --- Database Fixtures ---

@pytest.fixture
async def engine(tmp_path: Path):
    engine = sqlite_engine(tmp_path / "node.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def registry(session_factory) -> SlaveRegistry:
    return SlaveRegistry(session_factory)


@pytest.fixture
def history(session_factory, clock) -> SyncHistory:
    return SyncHistory(session_factory, clock=clock)


@pytest.fixture
def system_config(session_factory, clock) -> SystemConfigStore:
    return SystemConfigStore(session_factory, clock=clock)


# --- Cluster Fixtures ---

@pytest.fixture
def cluster_transport() -> ClusterTransport:
    return ClusterTransport()


@pytest.fixture
async def make_node(tmp_path: Path, clock: FakeClock, cluster_transport: ClusterTransport):
    """Factory fixture creating nodes that reach each other through cluster_transport."""
    nodes: List[Node] = []

    async def _make(name: str, host: str, port: int = 3001, reloader: Optional[StubReloader] = None, **node_sync) -> Node:
        db_path = tmp_path / f"{name}.db"
        settings = make_settings(db_path, **node_sync)
        reloader = reloader or StubReloader()
        runtime = build_runtime(
            settings,
            engine=sqlite_engine(db_path),
            transport=cluster_transport,
            reloader=reloader,
            clock=clock,
        )
        await init_db(runtime.engine)

        app = create_app(runtime=runtime)
        cluster_transport.register(host, port, app)
        api = AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": f"Bearer {ADMIN_TOKEN}"},
        )
        node = Node(name=name, host=host, port=port, runtime=runtime, reloader=reloader, api=api, app=app)
        nodes.append(node)
        return node

    yield _make

    for node in nodes:
        await node.api.aclose()
        await node.runtime.shutdown()


@pytest.fixture
async def master(make_node) -> Node:
    return await make_node("master", "master.local")


@pytest.fixture
async def slave(make_node) -> Node:
    return await make_node("slave", "slave-1.local")


# --- Cluster Helpers ---

async def pair(master: Node, slave: Node, sync_interval: int = 60) -> SlaveNode:
    """Register `slave` on `master` and connect it with the issued key."""
    node = await master.runtime.registry.register(slave.name, slave.host, slave.port, sync_interval)
    await slave.runtime.system_config.set_mode(NodeMode.SLAVE)
    await slave.runtime.orchestrator.connect_master(master.host, master.port, node.api_key, sync_interval)
    return node


async def add_domain(runtime: ClusterRuntime, name: str, **fields) -> None:
    fields.setdefault("upstreams", [{"host": "10.0.0.1", "port": 8080, "weight": 1}])
    async with session_scope(runtime.session_factory) as session:
        session.add(Domain(name=name, **fields))
