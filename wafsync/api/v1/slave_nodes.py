"""
Slave Node API Endpoints.

Master-side management of registered slave nodes: registration, API keys,
manual sync, live status and per-node sync history.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
import structlog

from wafsync.core.dependencies import RuntimeDep, require_admin
from wafsync.models.cluster import SyncStatus
from wafsync.schemas.cluster import (
    MessageResponse,
    PaginatedResponse,
    PaginationParams,
    SlaveNodeCreate,
    SlaveNodeListResponse,
    SlaveNodeResponse,
    SlaveNodeUpdate,
    SlaveNodeWithKeyResponse,
    SlaveStatusResponse,
    SyncAllResponse,
    SyncLogListResponse,
    SyncLogResponse,
    SyncOutcomeResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/slave-nodes",
    tags=["Slave Nodes"],
    dependencies=[Depends(require_admin)],
)


@router.post("", response_model=SlaveNodeWithKeyResponse, status_code=status.HTTP_201_CREATED)
async def register_slave_node(data: SlaveNodeCreate, runtime: RuntimeDep):
    """
    Register a new slave node.

    The generated API key is only returned here and on regeneration.
    """
    node = await runtime.registry.register(
        name=data.name,
        host=data.host,
        port=data.port,
        sync_interval=data.sync_interval,
    )
    await runtime.refresh_timers()
    return SlaveNodeWithKeyResponse.model_validate(node)


@router.get("", response_model=SlaveNodeListResponse)
async def list_slave_nodes(runtime: RuntimeDep):
    nodes = await runtime.registry.list_nodes()
    return SlaveNodeListResponse(
        nodes=[SlaveNodeResponse.model_validate(node) for node in nodes],
        total=len(nodes),
    )


@router.post("/sync-all", response_model=SyncAllResponse)
async def sync_all_slave_nodes(runtime: RuntimeDep):
    """Push the current configuration to every sync-enabled slave."""
    result = await runtime.orchestrator.push_all()
    return SyncAllResponse(
        config_hash=result.config_hash,
        total=len(result.outcomes) + len(result.skipped),
        success=result.count(SyncStatus.SUCCESS),
        failed=result.count(SyncStatus.FAILED),
        partial=result.count(SyncStatus.PARTIAL),
        skipped=result.skipped,
        results=[SyncOutcomeResponse.model_validate(outcome) for outcome in result.outcomes],
    )


@router.get("/{node_id}", response_model=SlaveNodeResponse)
async def get_slave_node(node_id: uuid.UUID, runtime: RuntimeDep):
    node = await runtime.registry.get(node_id)
    return SlaveNodeResponse.model_validate(node)


@router.patch("/{node_id}", response_model=SlaveNodeResponse)
async def update_slave_node(node_id: uuid.UUID, data: SlaveNodeUpdate, runtime: RuntimeDep):
    """Update a slave node. Host or port changes keep the API key."""
    node = await runtime.registry.update(node_id, **data.model_dump(exclude_unset=True))
    await runtime.refresh_timers()
    return SlaveNodeResponse.model_validate(node)


@router.delete("/{node_id}", response_model=MessageResponse)
async def delete_slave_node(node_id: uuid.UUID, runtime: RuntimeDep):
    """Delete a slave node together with its sync history."""
    await runtime.registry.delete(node_id)
    await runtime.refresh_timers()
    return MessageResponse(message="Slave node deleted")


@router.post("/{node_id}/regenerate-key", response_model=SlaveNodeWithKeyResponse)
async def regenerate_slave_api_key(node_id: uuid.UUID, runtime: RuntimeDep):
    """Issue a new API key. The previous key stops working immediately."""
    node = await runtime.registry.regenerate_api_key(node_id)
    return SlaveNodeWithKeyResponse.model_validate(node)


@router.post("/{node_id}/sync", response_model=SyncOutcomeResponse)
async def sync_slave_node(node_id: uuid.UUID, runtime: RuntimeDep):
    """Push the current configuration to one slave now."""
    outcome = await runtime.orchestrator.push(node_id, manual=True)
    return SyncOutcomeResponse.model_validate(outcome)


@router.get("/{node_id}/status", response_model=SlaveStatusResponse)
async def get_slave_node_status(node_id: uuid.UUID, runtime: RuntimeDep):
    """Probe the slave's health endpoint."""
    outcome = await runtime.orchestrator.check_node(node_id)
    node = await runtime.registry.get(node_id)
    return SlaveStatusResponse(
        node=SlaveNodeResponse.model_validate(node),
        healthy=outcome.succeeded,
        latency_ms=outcome.latency_ms,
        error=outcome.error,
    )


@router.get("/{node_id}/sync-history", response_model=SyncLogListResponse)
async def get_slave_sync_history(
    node_id: uuid.UUID,
    runtime: RuntimeDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    pagination = PaginationParams(page=page, page_size=page_size)
    await runtime.registry.get(node_id)

    logs = await runtime.history.list_by_node(node_id, limit=pagination.page_size, offset=pagination.offset)
    total = await runtime.history.count_by_node(node_id)
    return SyncLogListResponse(
        logs=[SyncLogResponse.model_validate(log) for log in logs],
        pagination=PaginatedResponse.create(total, pagination.page, pagination.page_size),
    )
