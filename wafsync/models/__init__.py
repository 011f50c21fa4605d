# Database models
from wafsync.models.cluster import (
    # Cluster models
    SystemConfig,
    SlaveNode,
    SyncLog,
    # Cluster enums
    NodeMode,
    SlaveStatus,
    SyncType,
    SyncStatus,
    SyncDirection,
)
from wafsync.models.waf import (
    Domain,
    SSLCertificate,
    ModSecCRSRule,
    ModSecCustomRule,
    AclRule,
    NotificationChannel,
    AlertRule,
    User,
    ProxyConfig,
)

__all__ = [
    "SystemConfig",
    "SlaveNode",
    "SyncLog",
    "NodeMode",
    "SlaveStatus",
    "SyncType",
    "SyncStatus",
    "SyncDirection",
    "Domain",
    "SSLCertificate",
    "ModSecCRSRule",
    "ModSecCustomRule",
    "AclRule",
    "NotificationChannel",
    "AlertRule",
    "User",
    "ProxyConfig",
]
