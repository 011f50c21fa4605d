"""
Slave Registry.

Master-side store of registered slave nodes: identity, connection coordinates,
per-node API key, sync cadence and last-known liveness.
"""

import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, select, update

from wafsync.core.database import SessionFactory, session_scope
from wafsync.models.cluster import SlaveNode, SlaveStatus, SyncLog
from wafsync.services.cluster.errors import NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

API_KEY_BYTES = 32  # 256 bits
UPDATABLE_FIELDS = frozenset({"name", "host", "port", "sync_interval", "sync_enabled"})


def generate_api_key() -> str:
    """Generate a random API key for slave authentication."""
    return secrets.token_hex(API_KEY_BYTES)


def key_prefix(api_key: Optional[str]) -> str:
    """Loggable prefix of an API key."""
    return f"{api_key[:8]}..." if api_key else ""


class SlaveRegistry:
    """Service for slave node registration and liveness bookkeeping."""

    def __init__(
        self,
        session_factory: SessionFactory,
        default_port: int = 3001,
        default_sync_interval: int = 60,
        min_sync_interval: int = 10,
    ):
        self._session_factory = session_factory
        self.default_port = default_port
        self.default_sync_interval = default_sync_interval
        self.min_sync_interval = min_sync_interval

    # ==========================================================================
    # Registration
    # ==========================================================================

    async def register(
        self,
        name: str,
        host: str,
        port: Optional[int] = None,
        sync_interval: Optional[int] = None,
    ) -> SlaveNode:
        """
        Register a new slave node with a fresh API key.

        The node starts offline until its first successful contact.

        Raises:
            ValidationError: Empty host, bad port/interval, or duplicate name
        """
        name = (name or "").strip()
        host = (host or "").strip()
        port = self.default_port if port is None else port
        sync_interval = self.default_sync_interval if sync_interval is None else sync_interval

        if not name:
            raise ValidationError("Name is required")
        self._validate_connection(host, port, sync_interval)

        async with session_scope(self._session_factory) as session:
            await self._ensure_name_available(session, name)
            node = SlaveNode(
                name=name,
                host=host,
                port=port,
                sync_interval=sync_interval,
                api_key=generate_api_key(),
                sync_enabled=True,
                status=SlaveStatus.OFFLINE.value,
            )
            session.add(node)
            await session.flush()
            await session.refresh(node)

        logger.info("Slave node registered", node_id=str(node.id), name=name, host=host, port=port)
        return node

    async def update(self, node_id: uuid.UUID, **fields: Any) -> SlaveNode:
        """
        Update only the provided fields.

        Changing host or port keeps the API key.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        async with session_scope(self._session_factory) as session:
            node = await self._get(session, node_id)

            if "name" in fields and fields["name"] != node.name:
                name = (fields["name"] or "").strip()
                if not name:
                    raise ValidationError("Name is required")
                await self._ensure_name_available(session, name)
                fields["name"] = name

            if "host" in fields:
                fields["host"] = (fields["host"] or "").strip()
            self._validate_connection(
                fields.get("host", node.host),
                fields.get("port", node.port),
                fields.get("sync_interval", node.sync_interval),
            )

            for field, value in fields.items():
                setattr(node, field, value)
            await session.flush()
            await session.refresh(node)

        logger.info("Slave node updated", node_id=str(node_id), changes=sorted(fields))
        return node

    async def regenerate_api_key(self, node_id: uuid.UUID) -> SlaveNode:
        """Replace the API key. The previous key stops working immediately."""
        async with session_scope(self._session_factory) as session:
            node = await self._get(session, node_id)
            node.api_key = generate_api_key()
            await session.flush()
            await session.refresh(node)

        logger.info("Slave node API key regenerated", node_id=str(node_id), key=key_prefix(node.api_key))
        return node

    async def delete(self, node_id: uuid.UUID) -> None:
        """Remove the node and its sync history."""
        async with session_scope(self._session_factory) as session:
            node = await self._get(session, node_id)
            await session.execute(delete(SyncLog).where(SyncLog.node_id == node_id))
            await session.delete(node)

        logger.info("Slave node deleted", node_id=str(node_id))

    # ==========================================================================
    # Lookup
    # ==========================================================================

    async def get(self, node_id: uuid.UUID) -> SlaveNode:
        async with session_scope(self._session_factory) as session:
            return await self._get(session, node_id)

    async def get_by_api_key(self, api_key: str) -> Optional[SlaveNode]:
        if not api_key:
            return None
        async with session_scope(self._session_factory) as session:
            result = await session.execute(select(SlaveNode).where(SlaveNode.api_key == api_key))
            return result.scalar_one_or_none()

    async def list_nodes(self) -> List[SlaveNode]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(select(SlaveNode).order_by(SlaveNode.created_at.desc(), SlaveNode.name))
            return list(result.scalars().all())

    async def list_sync_enabled(self) -> List[SlaveNode]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(SlaveNode).where(SlaveNode.sync_enabled.is_(True)).order_by(SlaveNode.name)
            )
            return list(result.scalars().all())

    # ==========================================================================
    # Liveness
    # ==========================================================================

    async def mark_seen(
        self,
        node_id: uuid.UUID,
        when: datetime,
        config_hash: Optional[str] = None,
    ) -> None:
        """Record a successful contact: last_seen advances and the node goes online."""
        values: Dict[str, Any] = {"last_seen": when, "status": SlaveStatus.ONLINE.value}
        if config_hash is not None:
            values["config_hash"] = config_hash

        async with session_scope(self._session_factory) as session:
            await session.execute(update(SlaveNode).where(SlaveNode.id == node_id).values(**values))

    async def find_stale(self, cutoff: datetime) -> List[SlaveNode]:
        """Online nodes whose last contact is older than the cutoff."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(SlaveNode).where(
                    SlaveNode.status == SlaveStatus.ONLINE.value,
                    SlaveNode.last_seen < cutoff,
                )
            )
            return list(result.scalars().all())

    async def mark_offline(self, node_ids: Sequence[uuid.UUID]) -> int:
        """Batch-transition nodes to offline. last_seen is left untouched."""
        if not node_ids:
            return 0
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(SlaveNode)
                .where(SlaveNode.id.in_(list(node_ids)))
                .values(status=SlaveStatus.OFFLINE.value)
            )
            return result.rowcount or 0

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _get(self, session, node_id: uuid.UUID) -> SlaveNode:
        node = await session.get(SlaveNode, node_id)
        if node is None:
            raise NotFoundError(f"Slave node {node_id} not found")
        return node

    async def _ensure_name_available(self, session, name: str) -> None:
        existing = await session.scalar(select(SlaveNode.id).where(SlaveNode.name == name))
        if existing is not None:
            raise ValidationError("Slave node with this name already exists")

    def _validate_connection(self, host: str, port: int, sync_interval: int) -> None:
        if not host:
            raise ValidationError("Host is required")
        if not 1 <= port <= 65535:
            raise ValidationError("Port must be between 1 and 65535")
        if sync_interval < self.min_sync_interval:
            raise ValidationError(f"Sync interval must be at least {self.min_sync_interval} seconds")
