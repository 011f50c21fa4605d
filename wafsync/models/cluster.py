"""
Cluster Sync Database Models.

This module contains the database models for master/slave configuration sync:
- System Config (singleton node mode and master connection state)
- Slave Nodes (master-side registry of mirrored nodes)
- Sync Logs (one row per sync attempt)
"""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from wafsync.core.database import Base


class NodeMode(str, enum.Enum):
    """Role of this node in the cluster."""

    MASTER = "master"
    SLAVE = "slave"


class SlaveStatus(str, enum.Enum):
    """Liveness of a registered slave as seen by the master."""

    ONLINE = "online"
    OFFLINE = "offline"


class SyncType(str, enum.Enum):
    """Kind of sync attempt."""

    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    HEALTH_CHECK = "health_check"


class SyncStatus(str, enum.Enum):
    """Sync attempt status. Everything except RUNNING is terminal."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


class SyncDirection(str, enum.Enum):
    """Which side initiated the attempt."""

    PUSH = "push"  # master -> slave import endpoint
    PULL = "pull"  # slave -> master export endpoint


class SystemConfig(Base):
    """
    Node-wide configuration singleton.

    Holds the node mode and, in slave mode, the connection to the master
    together with the hash of the last successfully applied snapshot.
    """

    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, default=1)
    node_mode = Column(String(20), default=NodeMode.MASTER.value, nullable=False)

    # Slave mode only
    master_host = Column(String(255))
    master_port = Column(Integer)
    master_api_key = Column(String(128))
    sync_interval = Column(Integer, default=60, nullable=False)
    last_sync_hash = Column(String(64), default="", nullable=False)
    connected = Column(Boolean, default=False, nullable=False)
    last_connected_at = Column(DateTime(timezone=True))
    connection_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<SystemConfig(mode={self.node_mode}, master={self.master_host}:{self.master_port})>"


class SlaveNode(Base):
    """
    Registered slave node.

    The api_key is the credential shared with the slave: the master presents it
    when pushing and the slave presents it when pulling.
    """

    __tablename__ = "slave_nodes"
    __table_args__ = (
        Index("ix_slave_nodes_status", "status"),
        Index("ix_slave_nodes_last_seen", "last_seen"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    host = Column(String(255), nullable=False)
    port = Column(Integer, default=3001, nullable=False)
    api_key = Column(String(128), unique=True, nullable=False)

    sync_interval = Column(Integer, default=60, nullable=False)
    sync_enabled = Column(Boolean, default=True, nullable=False)

    status = Column(String(20), default=SlaveStatus.OFFLINE.value, nullable=False)
    last_seen = Column(DateTime(timezone=True))
    config_hash = Column(String(64))  # Last hash delivered to the node

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    sync_logs = relationship(
        "SyncLog",
        back_populates="node",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<SlaveNode(id={self.id}, name={self.name}, host={self.host}, status={self.status})>"


class SyncLog(Base):
    """
    Sync attempt log.

    Created as RUNNING at the start of an attempt and closed exactly once.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_node_started", "node_id", "started_at"),
        Index("ix_sync_logs_status", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    node_id = Column(Uuid, ForeignKey("slave_nodes.id", ondelete="CASCADE"))  # NULL for slave-side pulls
    direction = Column(String(10), nullable=False)
    type = Column(String(20), nullable=False)
    status = Column(String(20), default=SyncStatus.RUNNING.value, nullable=False)

    config_hash = Column(String(64))
    changes_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)

    node = relationship("SlaveNode", back_populates="sync_logs")

    def __repr__(self):
        return f"<SyncLog(id={self.id}, node_id={self.node_id}, type={self.type}, status={self.status})>"
