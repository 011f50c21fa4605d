"""
Dependency injection utilities for FastAPI.
"""

import secrets
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import structlog

from wafsync.models.cluster import NodeMode, SlaveNode, SystemConfig
from wafsync.services.cluster.errors import Unauthorized, ValidationError
from wafsync.services.cluster.runtime import ClusterRuntime
from wafsync.services.cluster.slave_registry import key_prefix

logger = structlog.get_logger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)

BearerCredentials = Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)]


# ============================================================================
# Runtime Dependency
# ============================================================================

def get_runtime(request: Request) -> ClusterRuntime:
    """Get the cluster runtime built in the application lifespan."""
    return request.app.state.runtime


RuntimeDep = Annotated[ClusterRuntime, Depends(get_runtime)]


# ============================================================================
# Administrative API
# ============================================================================

async def require_admin(credentials: BearerCredentials, runtime: RuntimeDep) -> None:
    """
    Require the administrative bearer token.

    With no ADMIN_API_TOKEN configured the administrative API is open,
    which is only accepted outside production.
    """
    token = runtime.settings.security.admin_api_token
    if not token:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials, token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ============================================================================
# Inter-node Credentials
# ============================================================================

def get_node_api_key(credentials: BearerCredentials) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing API key")
    return credentials.credentials


NodeApiKey = Annotated[str, Depends(get_node_api_key)]


async def get_calling_slave(api_key: NodeApiKey, runtime: RuntimeDep) -> SlaveNode:
    """Authenticate a slave calling this master."""
    config = await runtime.system_config.get()
    if config.node_mode != NodeMode.MASTER.value:
        raise ValidationError("Node is not in master mode")

    try:
        return await runtime.orchestrator.authenticate_slave(api_key)
    except Unauthorized:
        logger.warning("Slave authentication failed", key=key_prefix(api_key))
        raise


async def get_master_connection(api_key: NodeApiKey, runtime: RuntimeDep) -> SystemConfig:
    """Authenticate the master calling this slave."""
    config = await runtime.system_config.get()
    if config.node_mode != NodeMode.SLAVE.value:
        raise ValidationError("Node is not in slave mode")

    if not config.master_api_key or not secrets.compare_digest(api_key, config.master_api_key):
        logger.warning("Master authentication failed", key=key_prefix(api_key))
        raise Unauthorized("Invalid API key")
    return config


CallingSlave = Annotated[SlaveNode, Depends(get_calling_slave)]
MasterConnectionDep = Annotated[SystemConfig, Depends(get_master_connection)]
