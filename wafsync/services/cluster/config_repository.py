"""
Config Repository.

Reads the canonical WAF configuration into a snapshot and mirrors an incoming
snapshot into the local store. Applying is all-or-nothing: every collection is
written inside one transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from wafsync.core.database import SessionFactory, session_scope
from wafsync.models.waf import (
    AclRule,
    AlertRule,
    Domain,
    ModSecCRSRule,
    ModSecCustomRule,
    NotificationChannel,
    ProxyConfig,
    SSLCertificate,
    User,
)
from wafsync.services.cluster.errors import ApplyError, SnapshotError
from wafsync.services.cluster.snapshot import ConfigSnapshot, canonicalize, format_datetime

logger = structlog.get_logger(__name__)


class ConfigRepository(Protocol):
    """Source and sink of the synchronizable configuration."""

    async def build_snapshot(self) -> ConfigSnapshot:
        ...

    async def apply(self, snapshot: ConfigSnapshot) -> int:
        ...


@dataclass(frozen=True)
class CollectionSpec:
    """Maps one snapshot collection onto a table."""

    name: str
    model: type
    key: Tuple[str, ...]
    fields: Tuple[str, ...]
    datetime_fields: Tuple[str, ...] = ()

    def serialize(self, row: Any) -> Dict[str, Any]:
        entity = {}
        for field in self.fields:
            value = getattr(row, field)
            if isinstance(value, datetime):
                value = format_datetime(value)
            entity[field] = value
        return entity

    def natural_key(self, entity: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(entity.get(field) for field in self.key)

    def project(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        return {field: entity.get(field) for field in self.fields}

    def to_columns(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        columns = {}
        for field in self.fields:
            if field not in entity:
                continue
            value = entity[field]
            if field in self.datetime_fields and isinstance(value, str):
                value = datetime.fromisoformat(value)
                if value.tzinfo is None:
                    value = value.replace(tzinfo=timezone.utc)
            columns[field] = value
        return columns


COLLECTION_SPECS: Tuple[CollectionSpec, ...] = (
    CollectionSpec(
        name="domains",
        model=Domain,
        key=("name",),
        fields=("name", "status", "ssl_enabled", "modsec_enabled", "upstreams", "load_balancer"),
    ),
    CollectionSpec(
        name="ssl_certificates",
        model=SSLCertificate,
        key=("domain_name", "common_name"),
        fields=(
            "domain_name", "common_name", "sans", "issuer", "certificate",
            "private_key", "chain", "auto_renew", "valid_from", "valid_to",
        ),
        datetime_fields=("valid_from", "valid_to"),
    ),
    CollectionSpec(
        name="modsec_crs_rules",
        model=ModSecCRSRule,
        key=("rule_file",),
        fields=("rule_file", "name", "category", "description", "enabled", "paranoia"),
    ),
    CollectionSpec(
        name="modsec_custom_rules",
        model=ModSecCustomRule,
        key=("name",),
        fields=("name", "category", "rule_content", "description", "enabled"),
    ),
    CollectionSpec(
        name="acl_rules",
        model=AclRule,
        key=("name",),
        fields=(
            "name", "type", "condition_field", "condition_operator",
            "condition_value", "action", "enabled",
        ),
    ),
    CollectionSpec(
        name="notification_channels",
        model=NotificationChannel,
        key=("name",),
        fields=("name", "type", "enabled", "config"),
    ),
    CollectionSpec(
        name="alert_rules",
        model=AlertRule,
        key=("name",),
        fields=("name", "condition", "threshold", "severity", "enabled", "check_interval", "channels"),
    ),
    CollectionSpec(
        name="users",
        model=User,
        key=("username",),
        fields=("username", "email", "full_name", "password", "role", "status"),
    ),
    CollectionSpec(
        name="proxy_configs",
        model=ProxyConfig,
        key=("name",),
        fields=("name", "content", "enabled"),
    ),
)


class SqlConfigRepository:
    """ConfigRepository backed by the local SQL database."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def build_snapshot(self) -> ConfigSnapshot:
        """
        Read every collection inside one transaction.

        Raises:
            SnapshotError: If any read fails; no partial snapshot is returned
        """
        collections: Dict[str, List[Dict[str, Any]]] = {}
        try:
            async with session_scope(self._session_factory) as session:
                for spec in COLLECTION_SPECS:
                    result = await session.execute(select(spec.model))
                    collections[spec.name] = [spec.serialize(row) for row in result.scalars()]
        except SQLAlchemyError as e:
            logger.error("Failed to build config snapshot", error=str(e))
            raise SnapshotError(f"Failed to read configuration: {e}") from e

        return ConfigSnapshot.seal(collections)

    async def apply(self, snapshot: ConfigSnapshot) -> int:
        """
        Mirror the snapshot into the local store.

        Rows missing from the snapshot are deleted, new rows are created and
        differing rows are updated.

        Returns:
            Number of created, updated and deleted entities

        Raises:
            ApplyError: If any write fails; nothing is committed
        """
        changes = 0
        current = None
        try:
            async with session_scope(self._session_factory) as session:
                for spec in COLLECTION_SPECS:
                    current = spec.name
                    changes += await self._apply_collection(session, spec, getattr(snapshot, spec.name))
        except ApplyError:
            raise
        except (SQLAlchemyError, ValueError, TypeError) as e:
            logger.error("Failed to apply config snapshot", collection=current, error=str(e))
            raise ApplyError(f"Failed to apply {current}: {e}") from e

        logger.info("Config snapshot applied", hash=snapshot.hash, changes=changes)
        return changes

    async def _apply_collection(self, session, spec: CollectionSpec, entities: List[Dict[str, Any]]) -> int:
        result = await session.execute(select(spec.model))
        existing = {spec.natural_key(spec.serialize(row)): row for row in result.scalars()}

        incoming: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for entity in entities:
            key = spec.natural_key(entity)
            if key in incoming:
                raise ApplyError(f"Duplicate {spec.name} entry for key {key}")
            incoming[key] = entity

        changes = 0
        for key, row in existing.items():
            if key not in incoming:
                await session.delete(row)
                changes += 1
        await session.flush()

        for key, entity in incoming.items():
            row = existing.get(key)
            if row is None:
                session.add(spec.model(**spec.to_columns(entity)))
                changes += 1
            elif canonicalize(spec.serialize(row)) != canonicalize(spec.project(entity)):
                for column, value in spec.to_columns(entity).items():
                    setattr(row, column, value)
                changes += 1
        await session.flush()

        return changes
