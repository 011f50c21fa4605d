"""
Configuration Snapshot and Content Hasher.

A snapshot is the complete synchronizable configuration at one point in time.
Its hash is a SHA-256 digest over a canonical serialization that is:
- insensitive to row order in every collection (nested lists included)
- insensitive to key order in every entity
- insensitive to formatting of multi-line text blobs (rule text, PEM, nginx blocks)

Two nodes holding the same configuration therefore compute the same hash even
when their databases return rows in different orders.
"""

import enum
import hashlib
import json
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from wafsync.services.cluster.errors import IntegrityError

# Collection names in wire order
SNAPSHOT_COLLECTIONS = (
    "domains",
    "ssl_certificates",
    "modsec_crs_rules",
    "modsec_custom_rules",
    "acl_rules",
    "notification_channels",
    "alert_rules",
    "users",
    "proxy_configs",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime(value: datetime) -> str:
    """Render a datetime as naive-UTC ISO-8601 so every backend agrees."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def normalize_text(value: str) -> str:
    """
    Normalize multi-line text blobs.

    Line endings are unified, each line is stripped and blank lines are
    dropped. Single-line strings are returned unchanged.
    """
    if "\n" not in value and "\r" not in value:
        return value
    lines = value.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(line.strip() for line in lines if line.strip())


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonicalize(value: Any) -> Any:
    """Convert a value into its canonical JSON-compatible form."""
    if isinstance(value, Mapping):
        return {str(key): canonicalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return sorted((canonicalize(item) for item in value), key=_encode)
    if isinstance(value, enum.Enum):
        return canonicalize(value.value)
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def compute_hash(collections: Mapping[str, Any]) -> str:
    """
    Compute the content hash of a set of collections.

    Missing collections hash the same as empty ones.
    """
    canonical = {name: canonicalize(collections.get(name) or []) for name in SNAPSHOT_COLLECTIONS}
    return hashlib.sha256(_encode(canonical).encode("utf-8")).hexdigest()


class ConfigSnapshot(BaseModel):
    """Canonical configuration snapshot exchanged between nodes."""

    domains: List[Dict[str, Any]] = Field(default_factory=list)
    ssl_certificates: List[Dict[str, Any]] = Field(default_factory=list)
    modsec_crs_rules: List[Dict[str, Any]] = Field(default_factory=list)
    modsec_custom_rules: List[Dict[str, Any]] = Field(default_factory=list)
    acl_rules: List[Dict[str, Any]] = Field(default_factory=list)
    notification_channels: List[Dict[str, Any]] = Field(default_factory=list)
    alert_rules: List[Dict[str, Any]] = Field(default_factory=list)
    users: List[Dict[str, Any]] = Field(default_factory=list)
    proxy_configs: List[Dict[str, Any]] = Field(default_factory=list)

    hash: str = ""
    generated_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def seal(cls, collections: Mapping[str, List[Dict[str, Any]]]) -> "ConfigSnapshot":
        """
        Build a snapshot from raw collections and stamp its hash.

        Raises:
            pydantic.ValidationError: If a collection is not a list of objects
        """
        snapshot = cls(**{name: collections.get(name) or [] for name in SNAPSHOT_COLLECTIONS})
        snapshot.hash = compute_hash(snapshot.collections())
        return snapshot

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any], announced_hash: str) -> "ConfigSnapshot":
        """
        Rebuild a snapshot received from a remote node and verify it.

        Raises:
            IntegrityError: If the payload is malformed or the recomputed hash
                differs from the announced one
        """
        if not isinstance(payload, Mapping):
            raise IntegrityError("Malformed snapshot payload: expected an object", expected=announced_hash)
        try:
            snapshot = cls.seal(payload)
        except PydanticValidationError as e:
            raise IntegrityError(
                f"Malformed snapshot payload: {e.error_count()} invalid field(s)",
                expected=announced_hash,
            ) from e

        if snapshot.hash != announced_hash:
            raise IntegrityError(
                f"Snapshot hash mismatch: announced {announced_hash[:12]}, computed {snapshot.hash[:12]}",
                expected=announced_hash,
                actual=snapshot.hash,
            )
        return snapshot

    def collections(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: getattr(self, name) for name in SNAPSHOT_COLLECTIONS}

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe payload; datetimes inside entities are already strings."""
        return json.loads(json.dumps(self.collections(), default=_json_default))

    @property
    def entity_count(self) -> int:
        return sum(len(items) for items in self.collections().values())


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, (date, uuid.UUID)):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
