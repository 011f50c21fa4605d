"""
System Config API Endpoints.

Node mode, master connection management and slave-side sync.
"""

from fastapi import APIRouter, Depends, Query
import structlog

from wafsync.core.dependencies import RuntimeDep, require_admin
from wafsync.schemas.cluster import (
    ConnectionTestResponse,
    ConnectMasterRequest,
    NodeModeUpdate,
    PaginatedResponse,
    PaginationParams,
    SyncLogListResponse,
    SyncLogResponse,
    SyncOutcomeResponse,
    SystemConfigResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/system-config",
    tags=["System Config"],
    dependencies=[Depends(require_admin)],
)


@router.get("", response_model=SystemConfigResponse)
async def get_system_config(runtime: RuntimeDep):
    config = await runtime.system_config.get()
    return SystemConfigResponse.from_config(config)


@router.put("/node-mode", response_model=SystemConfigResponse)
async def update_node_mode(data: NodeModeUpdate, runtime: RuntimeDep):
    """
    Switch between master and slave mode.

    Switching to master clears every master connection and sync field.
    """
    config = await runtime.system_config.set_mode(data.node_mode)
    await runtime.refresh_timers()
    return SystemConfigResponse.from_config(config)


@router.post("/connect-master", response_model=SystemConfigResponse)
async def connect_to_master(data: ConnectMasterRequest, runtime: RuntimeDep):
    """
    Connect this slave to a master.

    The connection is tested first; the result is stored either way.
    """
    config = await runtime.orchestrator.connect_master(
        host=data.master_host,
        port=data.master_port,
        api_key=data.master_api_key,
        sync_interval=data.sync_interval,
    )
    await runtime.refresh_timers()
    return SystemConfigResponse.from_config(config)


@router.post("/disconnect-master", response_model=SystemConfigResponse)
async def disconnect_from_master(runtime: RuntimeDep):
    config = await runtime.system_config.disconnect()
    await runtime.refresh_timers()
    return SystemConfigResponse.from_config(config)


@router.post("/test-master-connection", response_model=ConnectionTestResponse)
async def test_master_connection(runtime: RuntimeDep):
    test = await runtime.orchestrator.test_master_connection()
    return ConnectionTestResponse(connected=test.connected, latency_ms=test.latency_ms, error=test.error)


@router.post("/sync", response_model=SyncOutcomeResponse)
async def sync_with_master(runtime: RuntimeDep):
    """Pull from the master now."""
    outcome = await runtime.orchestrator.pull(manual=True)
    return SyncOutcomeResponse.model_validate(outcome)


@router.get("/sync-history", response_model=SyncLogListResponse)
async def get_sync_history(
    runtime: RuntimeDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """Sync attempts made by this node against its master."""
    pagination = PaginationParams(page=page, page_size=page_size)
    logs = await runtime.history.list_by_node(None, limit=pagination.page_size, offset=pagination.offset)
    total = await runtime.history.count_by_node(None)
    return SyncLogListResponse(
        logs=[SyncLogResponse.model_validate(log) for log in logs],
        pagination=PaginatedResponse.create(total, pagination.page, pagination.page_size),
    )
