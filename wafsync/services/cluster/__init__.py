"""
Cluster Sync Services Package.

Master/slave configuration synchronization: snapshot hashing, slave registry,
sync transport, orchestration, liveness monitoring and sync history.
"""

from wafsync.services.cluster.liveness import LivenessMonitor
from wafsync.services.cluster.orchestrator import SyncOrchestrator, SyncOutcome
from wafsync.services.cluster.runtime import ClusterRuntime, build_runtime
from wafsync.services.cluster.scheduler import PeriodicTask, SyncScheduler
from wafsync.services.cluster.slave_registry import SlaveRegistry
from wafsync.services.cluster.snapshot import ConfigSnapshot, compute_hash
from wafsync.services.cluster.sync_history import SyncHistory
from wafsync.services.cluster.system_config import SystemConfigStore
from wafsync.services.cluster.transport import SyncClient

__all__ = [
    "ClusterRuntime",
    "ConfigSnapshot",
    "LivenessMonitor",
    "PeriodicTask",
    "SlaveRegistry",
    "SyncClient",
    "SyncHistory",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncScheduler",
    "SystemConfigStore",
    "build_runtime",
    "compute_hash",
]
