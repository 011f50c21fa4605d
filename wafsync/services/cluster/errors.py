"""
Cluster sync exceptions.

Every error carries an HTTP status and a machine-readable code so that the
API layer and the sync client agree on how failures travel over the wire.
"""

from typing import Optional


class ClusterSyncError(Exception):
    """Base exception for cluster sync errors."""

    status_code = 500
    code = "CLUSTER_SYNC_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ClusterSyncError):
    """Bad input or an operation not allowed in the current node mode."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ClusterSyncError):
    """Slave node or log entry not found."""

    status_code = 404
    code = "NOT_FOUND"


class Unauthorized(ClusterSyncError):
    """Missing, stale, or incorrect node credential."""

    status_code = 401
    code = "UNAUTHORIZED"


class SyncDisabledError(Unauthorized):
    """Credential is valid but sync is disabled for the node."""

    status_code = 403
    code = "SYNC_DISABLED"


class SyncInProgressError(ClusterSyncError):
    """An attempt for the same target is already running."""

    status_code = 409
    code = "SYNC_IN_PROGRESS"


class IntegrityError(ClusterSyncError):
    """Snapshot payload does not match its announced hash."""

    status_code = 422
    code = "INTEGRITY_ERROR"

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ApplyError(ClusterSyncError):
    """
    Repository or reloader failure while applying a snapshot.

    `applied` is True when the repository committed but the reload failed,
    which the master records as a partial sync.
    """

    status_code = 500
    code = "APPLY_FAILED"

    def __init__(self, message: str, applied: bool = False, changes: int = 0):
        super().__init__(message)
        self.applied = applied
        self.changes = changes
        if applied:
            self.status_code = 502
            self.code = "RELOAD_FAILED"


class TransportError(ClusterSyncError):
    """Network failure, timeout, or unexpected response from the remote node."""

    status_code = 502
    code = "TRANSPORT_ERROR"
    retryable = True


class SnapshotError(ClusterSyncError):
    """Reading the canonical store failed; no snapshot was produced."""

    status_code = 500
    code = "SNAPSHOT_FAILED"


class SyncLogFinalizedError(ClusterSyncError):
    """A terminal sync log cannot be updated again."""

    status_code = 409
    code = "SYNC_LOG_FINALIZED"
