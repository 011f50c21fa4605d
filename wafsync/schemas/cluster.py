"""
Cluster Sync API Schemas.

Pydantic schemas for the administrative API (slave nodes, system config,
sync history) and for the inter-node sync wire contract.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wafsync.models.cluster import NodeMode, SyncStatus, SystemConfig

# =============================================================================
# Shared/Common Schemas
# =============================================================================

class PaginationParams(BaseModel):
    """Pagination parameters for list endpoints."""

    page: int = Field(1, ge=1, description="Page number (1-based)")
    page_size: int = Field(20, ge=1, le=100, description="Items per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel):
    """Generic paginated response wrapper."""

    total: int = Field(..., description="Total number of items")
    page: int = Field(..., description="Current page number")
    page_size: int = Field(..., description="Items per page")
    total_pages: int = Field(..., description="Total number of pages")

    @classmethod
    def create(cls, total: int, page: int, page_size: int) -> "PaginatedResponse":
        total_pages = (total + page_size - 1) // page_size
        return cls(total=total, page=page, page_size=page_size, total_pages=total_pages)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# =============================================================================
# Slave Node Schemas
# =============================================================================

class SlaveNodeCreate(BaseModel):
    """Schema for registering a slave node."""

    name: str = Field(..., min_length=1, max_length=255, description="Unique node name")
    host: str = Field(..., min_length=1, max_length=255, description="IP address or hostname")
    port: Optional[int] = Field(None, ge=1, le=65535, description="Slave API port")
    sync_interval: Optional[int] = Field(None, ge=1, description="Sync interval in seconds")

    @field_validator("name", "host")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class SlaveNodeUpdate(BaseModel):
    """Schema for updating a slave node. Only provided fields change."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    host: Optional[str] = Field(None, min_length=1, max_length=255)
    port: Optional[int] = Field(None, ge=1, le=65535)
    sync_interval: Optional[int] = Field(None, ge=1)
    sync_enabled: Optional[bool] = None


class SlaveNodeResponse(BaseModel):
    """Slave node as returned by list/detail endpoints. Never carries the API key."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    host: str
    port: int
    sync_interval: int
    sync_enabled: bool
    status: str
    last_seen: Optional[datetime] = None
    config_hash: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SlaveNodeWithKeyResponse(SlaveNodeResponse):
    """Returned once on registration and on key regeneration."""

    api_key: str


class SlaveNodeListResponse(BaseModel):
    nodes: List[SlaveNodeResponse]
    total: int


class SlaveStatusResponse(BaseModel):
    """Result of a live health check against a slave."""

    node: SlaveNodeResponse
    healthy: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None


# =============================================================================
# Sync Schemas
# =============================================================================

class SyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    node_id: Optional[uuid.UUID] = None
    direction: str
    type: str
    status: str
    config_hash: Optional[str] = None
    changes_count: int
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class SyncLogListResponse(BaseModel):
    logs: List[SyncLogResponse]
    pagination: PaginatedResponse


class SyncOutcomeResponse(BaseModel):
    """Result of one sync attempt."""

    model_config = ConfigDict(from_attributes=True)

    status: SyncStatus
    log_id: Optional[int] = None
    node_id: Optional[uuid.UUID] = None
    config_hash: Optional[str] = None
    changes: int = 0
    unchanged: bool = False
    error: Optional[str] = None


class SyncAllResponse(BaseModel):
    config_hash: Optional[str] = None
    total: int
    success: int
    failed: int
    partial: int
    skipped: List[uuid.UUID] = Field(default_factory=list)
    results: List[SyncOutcomeResponse] = Field(default_factory=list)


# =============================================================================
# System Config Schemas
# =============================================================================

class SystemConfigResponse(BaseModel):
    """Node mode and master connection state. The master API key is never returned."""

    node_mode: NodeMode
    master_host: Optional[str] = None
    master_port: Optional[int] = None
    has_master_api_key: bool = False
    sync_interval: int
    last_sync_hash: str = ""
    connected: bool = False
    last_connected_at: Optional[datetime] = None
    connection_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, config: SystemConfig) -> "SystemConfigResponse":
        return cls(
            node_mode=NodeMode(config.node_mode),
            master_host=config.master_host,
            master_port=config.master_port,
            has_master_api_key=bool(config.master_api_key),
            sync_interval=config.sync_interval,
            last_sync_hash=config.last_sync_hash or "",
            connected=config.connected,
            last_connected_at=config.last_connected_at,
            connection_error=config.connection_error,
            updated_at=config.updated_at,
        )


class NodeModeUpdate(BaseModel):
    node_mode: NodeMode


class ConnectMasterRequest(BaseModel):
    master_host: str = Field(..., min_length=1, max_length=255)
    master_port: int = Field(3001, ge=1, le=65535)
    master_api_key: str = Field(..., min_length=1, max_length=128)
    sync_interval: int = Field(60, ge=1, description="Pull interval in seconds")


class ConnectionTestResponse(BaseModel):
    connected: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None


# =============================================================================
# Inter-node Wire Schemas
# =============================================================================

class ImportRequest(BaseModel):
    """Full snapshot transfer pushed by the master."""

    hash: str = Field(..., min_length=1, max_length=64)
    snapshot: Dict[str, Any]


class ImportResponse(BaseModel):
    imported: bool
    hash: str
    changes: int


class NodeHealthResponse(BaseModel):
    status: str
    node_mode: NodeMode
    version: str
    timestamp: datetime


class CurrentHashResponse(BaseModel):
    hash: str
    generated_at: datetime
    entity_count: int


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    version: str
    database: Optional[str] = None
