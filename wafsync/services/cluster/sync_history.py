"""
Sync History.

Append-only log of sync attempts. A row is created as RUNNING and receives
exactly one terminal update.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog
from sqlalchemy import func, select, update

from wafsync.core.database import SessionFactory, session_scope
from wafsync.models.cluster import SyncDirection, SyncLog, SyncStatus, SyncType
from wafsync.services.cluster.errors import NotFoundError, SyncLogFinalizedError, ValidationError

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SyncHistory:
    """Writer and reader for sync logs."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def record(
        self,
        node_id: Optional[uuid.UUID],
        sync_type: SyncType,
        direction: SyncDirection,
        config_hash: Optional[str] = None,
    ) -> int:
        """Open a RUNNING log entry and return its id."""
        async with session_scope(self._session_factory) as session:
            log = SyncLog(
                node_id=node_id,
                type=sync_type.value,
                direction=direction.value,
                status=SyncStatus.RUNNING.value,
                config_hash=config_hash,
                changes_count=0,
                started_at=self._clock(),
            )
            session.add(log)
            await session.flush()
            return log.id

    async def complete(
        self,
        log_id: int,
        status: SyncStatus,
        changes_count: int = 0,
        error: Optional[str] = None,
        config_hash: Optional[str] = None,
    ) -> SyncLog:
        """
        Close a log entry with a terminal status.

        Raises:
            ValidationError: If status is not terminal
            NotFoundError: If the log does not exist
            SyncLogFinalizedError: If the log was already closed
        """
        if not status.is_terminal:
            raise ValidationError("Sync log can only be completed with a terminal status")

        completed_at = self._clock()
        async with session_scope(self._session_factory) as session:
            log = await session.get(SyncLog, log_id)
            if log is None:
                raise NotFoundError(f"Sync log {log_id} not found")
            if log.status != SyncStatus.RUNNING.value:
                raise SyncLogFinalizedError(f"Sync log {log_id} is already {log.status}")

            values = {
                "status": status.value,
                "changes_count": changes_count,
                "error_message": error,
                "completed_at": completed_at,
                "duration_ms": max(0, int((completed_at - _as_utc(log.started_at)).total_seconds() * 1000)),
            }
            if config_hash is not None:
                values["config_hash"] = config_hash

            # Guard against a concurrent completion between the read and the write
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.id == log_id, SyncLog.status == SyncStatus.RUNNING.value)
                .values(**values)
            )
            if not result.rowcount:
                raise SyncLogFinalizedError(f"Sync log {log_id} is already closed")

            await session.refresh(log)
            return log

    async def list_by_node(
        self,
        node_id: Optional[uuid.UUID],
        limit: int = 50,
        offset: int = 0,
    ) -> List[SyncLog]:
        """Logs for a node, newest first. node_id=None lists this node's pulls."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(SyncLog)
                .where(self._node_filter(node_id))
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_by_node(self, node_id: Optional[uuid.UUID]) -> int:
        async with session_scope(self._session_factory) as session:
            total = await session.scalar(select(func.count(SyncLog.id)).where(self._node_filter(node_id)))
            return total or 0

    async def fail_orphaned(self) -> int:
        """Close logs left RUNNING by a previous process."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.status == SyncStatus.RUNNING.value)
                .values(
                    status=SyncStatus.FAILED.value,
                    error_message="Interrupted before completion",
                    completed_at=self._clock(),
                )
            )
            count = result.rowcount or 0

        if count:
            logger.warning("Closed orphaned sync logs", count=count)
        return count

    @staticmethod
    def _node_filter(node_id: Optional[uuid.UUID]):
        if node_id is None:
            return SyncLog.node_id.is_(None)
        return SyncLog.node_id == node_id
