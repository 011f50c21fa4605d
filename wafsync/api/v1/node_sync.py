"""
Node Sync API Endpoints.

Inter-node wire contract, authenticated with the per-node API key as a bearer
token:
- master: export (pulled by slaves) and master-health
- slave: import (pushed by the master) and health
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from wafsync.core.dependencies import CallingSlave, MasterConnectionDep, RuntimeDep, require_admin
from wafsync.models.cluster import NodeMode
from wafsync.schemas.cluster import CurrentHashResponse, ImportRequest, ImportResponse, NodeHealthResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/node-sync", tags=["Node Sync"])


# =============================================================================
# Master side
# =============================================================================

@router.get("/export")
async def export_config(
    node: CallingSlave,
    runtime: RuntimeDep,
    known_hash: Optional[str] = Query(None, max_length=64),
):
    """
    Export the full configuration to a slave.

    Returns `{unchanged: true, hash}` when known_hash is the current hash,
    otherwise `{hash, snapshot}`.
    """
    export = await runtime.orchestrator.serve_export(node, known_hash)
    if export.unchanged:
        return {"unchanged": True, "hash": export.hash}
    return {"hash": export.hash, "snapshot": export.snapshot.to_wire()}


@router.get("/master-health", response_model=NodeHealthResponse)
async def master_health(node: CallingSlave, runtime: RuntimeDep):
    """Connection test target for slaves. Counts as contact from the slave."""
    await runtime.orchestrator.record_contact(node)
    return NodeHealthResponse(
        status="healthy",
        node_mode=NodeMode.MASTER,
        version=runtime.settings.app.app_version,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# Slave side
# =============================================================================

@router.post("/import", response_model=ImportResponse)
async def import_config(data: ImportRequest, config: MasterConnectionDep, runtime: RuntimeDep):
    """
    Import a snapshot pushed by the master.

    The payload hash is recomputed and must match the announced hash.
    """
    outcome = await runtime.orchestrator.receive_push(data.snapshot, data.hash)
    return ImportResponse(imported=True, hash=outcome.config_hash, changes=outcome.changes)


@router.get("/health", response_model=NodeHealthResponse)
async def slave_health(config: MasterConnectionDep, runtime: RuntimeDep):
    """Heartbeat probe used by the master."""
    return NodeHealthResponse(
        status="healthy",
        node_mode=NodeMode.SLAVE,
        version=runtime.settings.app.app_version,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# Admin
# =============================================================================

@router.get("/current-hash", response_model=CurrentHashResponse, dependencies=[Depends(require_admin)])
async def current_hash(runtime: RuntimeDep):
    """Hash of the local configuration store."""
    snapshot = await runtime.repository.build_snapshot()
    return CurrentHashResponse(
        hash=snapshot.hash,
        generated_at=snapshot.generated_at,
        entity_count=snapshot.entity_count,
    )
