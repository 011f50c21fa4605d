"""
System Config Store and Node Role.

The node-wide SystemConfig row is owned by this store and handed to the
orchestrator explicitly. The node role is resolved from it as a tagged variant:
a master carries the slave registry, a slave carries its master connection.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from wafsync.core.database import SessionFactory, session_scope
from wafsync.models.cluster import NodeMode, SystemConfig
from wafsync.services.cluster.errors import ValidationError
from wafsync.services.cluster.slave_registry import SlaveRegistry

logger = structlog.get_logger(__name__)

SYSTEM_CONFIG_ID = 1


@dataclass(frozen=True)
class MasterConnection:
    """Coordinates and credential a slave uses to reach its master."""

    host: str
    port: int
    api_key: str
    sync_interval: int
    last_sync_hash: str = ""


@dataclass(frozen=True)
class MasterRole:
    registry: SlaveRegistry


@dataclass(frozen=True)
class SlaveRole:
    connection: Optional[MasterConnection]


NodeRole = Union[MasterRole, SlaveRole]


def _slave_fields_reset(default_sync_interval: int) -> Dict[str, Any]:
    return {
        "master_host": None,
        "master_port": None,
        "master_api_key": None,
        "sync_interval": default_sync_interval,
        "last_sync_hash": "",
        "connected": False,
        "last_connected_at": None,
        "connection_error": None,
    }


class SystemConfigStore:
    """Owner of the SystemConfig singleton."""

    def __init__(
        self,
        session_factory: SessionFactory,
        default_sync_interval: int = 60,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self.default_sync_interval = default_sync_interval
        self._clock = clock

    async def get(self) -> SystemConfig:
        """Get the config row, creating it in master mode on first access."""
        async with session_scope(self._session_factory) as session:
            config = await session.get(SystemConfig, SYSTEM_CONFIG_ID)
            if config is not None:
                return config

        try:
            async with session_scope(self._session_factory) as session:
                config = SystemConfig(
                    id=SYSTEM_CONFIG_ID,
                    node_mode=NodeMode.MASTER.value,
                    **_slave_fields_reset(self.default_sync_interval),
                )
                session.add(config)
                await session.flush()
                await session.refresh(config)
            logger.info("System config created", node_mode=config.node_mode)
            return config
        except DBIntegrityError:
            # Created concurrently
            async with session_scope(self._session_factory) as session:
                return await session.get(SystemConfig, SYSTEM_CONFIG_ID)

    async def resolve_role(self, registry: SlaveRegistry) -> NodeRole:
        config = await self.get()
        if config.node_mode == NodeMode.SLAVE.value:
            return SlaveRole(connection=self._connection_from(config))
        return MasterRole(registry=registry)

    async def set_mode(self, mode: NodeMode) -> SystemConfig:
        """
        Switch node mode.

        Switching to master is a hard reset of every slave-side sync field.
        """
        previous = (await self.get()).node_mode
        values: Dict[str, Any] = {"node_mode": mode.value}
        if mode is NodeMode.MASTER:
            values.update(_slave_fields_reset(self.default_sync_interval))

        config = await self._update(values)
        logger.info("Node mode changed", node_mode=mode.value, previous=previous)
        return config

    async def save_master_connection(
        self,
        host: str,
        port: int,
        api_key: str,
        sync_interval: int,
        connected: bool,
        error: Optional[str] = None,
    ) -> SystemConfig:
        """
        Store master coordinates.

        A new master relationship starts without a last-applied hash so the
        first pull transfers the full snapshot.
        """
        config = await self.get()
        if config.node_mode != NodeMode.SLAVE.value:
            raise ValidationError('Cannot connect to master. Node mode must be "slave".')

        values: Dict[str, Any] = {
            "master_host": host,
            "master_port": port,
            "master_api_key": api_key,
            "sync_interval": sync_interval,
            "connected": connected,
            "connection_error": error,
        }
        if (config.master_host, config.master_port, config.master_api_key) != (host, port, api_key):
            values["last_sync_hash"] = ""
        if connected:
            values["last_connected_at"] = self._clock()
        return await self._update(values)

    async def disconnect(self) -> SystemConfig:
        config = await self._update(_slave_fields_reset(self.default_sync_interval))
        logger.info("Disconnected from master")
        return config

    async def mark_connected(self) -> SystemConfig:
        return await self._update(
            {"connected": True, "last_connected_at": self._clock(), "connection_error": None}
        )

    async def record_sync_success(self, config_hash: str) -> SystemConfig:
        return await self._update(
            {
                "last_sync_hash": config_hash,
                "connected": True,
                "last_connected_at": self._clock(),
                "connection_error": None,
            }
        )

    async def record_sync_failure(self, error: str, connected: bool) -> SystemConfig:
        """Store the error for operators. last_sync_hash is never touched here."""
        return await self._update({"connected": connected, "connection_error": error})

    async def _update(self, values: Dict[str, Any]) -> SystemConfig:
        await self.get()
        async with session_scope(self._session_factory) as session:
            config = await session.scalar(select(SystemConfig).where(SystemConfig.id == SYSTEM_CONFIG_ID))
            for field, value in values.items():
                setattr(config, field, value)
            await session.flush()
            await session.refresh(config)
            return config

    @staticmethod
    def _connection_from(config: SystemConfig) -> Optional[MasterConnection]:
        if not (config.master_host and config.master_port and config.master_api_key):
            return None
        return MasterConnection(
            host=config.master_host,
            port=config.master_port,
            api_key=config.master_api_key,
            sync_interval=config.sync_interval,
            last_sync_hash=config.last_sync_hash or "",
        )
