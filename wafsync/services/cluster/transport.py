"""
Sync Transport Client.

Authenticated HTTP client for inter-node calls:
- slave -> master: export (pull) and master health
- master -> slave: import (push) and slave health

Every call carries a bounded timeout and the node credential as a bearer
token. Failures are translated into the cluster sync error taxonomy so the
orchestrator can decide what is retryable.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog

from wafsync.services.cluster.errors import (
    ApplyError,
    ClusterSyncError,
    IntegrityError,
    SyncDisabledError,
    TransportError,
    Unauthorized,
    ValidationError,
)
from wafsync.services.cluster.slave_registry import key_prefix
from wafsync.services.cluster.snapshot import ConfigSnapshot

logger = structlog.get_logger(__name__)

NODE_SYNC_PREFIX = "/api/v1/node-sync"
EXPORT_PATH = f"{NODE_SYNC_PREFIX}/export"
IMPORT_PATH = f"{NODE_SYNC_PREFIX}/import"
SLAVE_HEALTH_PATH = f"{NODE_SYNC_PREFIX}/health"
MASTER_HEALTH_PATH = f"{NODE_SYNC_PREFIX}/master-health"


@dataclass(frozen=True)
class ExportResult:
    """Response of the master's export endpoint."""

    hash: str
    unchanged: bool
    snapshot: Optional[ConfigSnapshot] = None


@dataclass(frozen=True)
class ImportResult:
    """Response of a slave's import endpoint."""

    imported: bool
    hash: str
    changes: int


@dataclass(frozen=True)
class HealthResult:
    status: str
    node_mode: Optional[str]
    version: Optional[str]
    latency_ms: int


class SyncClient:
    """HTTP client for master/slave sync endpoints."""

    def __init__(
        self,
        connect_timeout: float = 10.0,
        transfer_timeout: float = 30.0,
        scheme: str = "http",
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout
        self.transfer_timeout = transfer_timeout
        self.scheme = scheme
        self.verify_tls = verify_tls
        self._transport = transport

    def base_url(self, host: str, port: int) -> str:
        return f"{self.scheme}://{host}:{port}"

    # ==========================================================================
    # Slave -> master
    # ==========================================================================

    async def export(
        self,
        host: str,
        port: int,
        api_key: str,
        known_hash: Optional[str] = None,
    ) -> ExportResult:
        """
        Download the master configuration.

        Returns an unchanged result when known_hash matches the master hash.

        Raises:
            IntegrityError: Payload does not match the announced hash
            Unauthorized: Credential rejected
            TransportError: Network failure or malformed response
        """
        params = {"known_hash": known_hash} if known_hash else None
        data = await self._request(
            "GET",
            self.base_url(host, port) + EXPORT_PATH,
            api_key,
            timeout=self.transfer_timeout,
            params=params,
        )

        announced = data.get("hash")
        if not isinstance(announced, str) or not announced:
            raise TransportError("Invalid response structure from master: missing hash")

        if data.get("unchanged"):
            return ExportResult(hash=announced, unchanged=True)

        payload = data.get("snapshot")
        if not isinstance(payload, dict):
            raise TransportError("Invalid response structure from master: missing snapshot")

        snapshot = ConfigSnapshot.from_wire(payload, announced)
        return ExportResult(hash=announced, unchanged=False, snapshot=snapshot)

    async def check_master_health(self, host: str, port: int, api_key: str) -> HealthResult:
        return await self._health(self.base_url(host, port) + MASTER_HEALTH_PATH, api_key)

    # ==========================================================================
    # Master -> slave
    # ==========================================================================

    async def push(self, host: str, port: int, api_key: str, snapshot: ConfigSnapshot) -> ImportResult:
        """
        Send a snapshot to a slave's import endpoint.

        Raises:
            ApplyError: Slave failed to apply (applied=True when only the reload failed)
            IntegrityError: Slave rejected the payload hash
            Unauthorized: Credential rejected
            TransportError: Network failure or malformed response
        """
        data = await self._request(
            "POST",
            self.base_url(host, port) + IMPORT_PATH,
            api_key,
            timeout=self.transfer_timeout,
            json={"hash": snapshot.hash, "snapshot": snapshot.to_wire()},
        )
        try:
            return ImportResult(
                imported=bool(data["imported"]),
                hash=str(data["hash"]),
                changes=int(data["changes"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Invalid response structure from slave: {e}") from e

    async def check_slave_health(self, host: str, port: int, api_key: str) -> HealthResult:
        return await self._health(self.base_url(host, port) + SLAVE_HEALTH_PATH, api_key)

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _health(self, url: str, api_key: str) -> HealthResult:
        started = time.monotonic()
        data = await self._request("GET", url, api_key, timeout=self.connect_timeout)
        latency_ms = int((time.monotonic() - started) * 1000)
        return HealthResult(
            status=str(data.get("status", "unknown")),
            node_mode=data.get("node_mode"),
            version=data.get("version"),
            latency_ms=latency_ms,
        )

    async def _request(
        self,
        method: str,
        url: str,
        api_key: str,
        timeout: float,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                verify=self.verify_tls,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {url} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        if response.is_success:
            try:
                data = response.json()
            except ValueError as e:
                raise TransportError(f"Invalid JSON from {url}") from e
            if not isinstance(data, dict):
                raise TransportError(f"Invalid response structure from {url}")
            return data

        error = _to_error(response)
        logger.warning(
            "Remote node rejected sync request",
            url=url,
            status_code=response.status_code,
            code=error.code,
            key=key_prefix(api_key),
        )
        raise error


def _to_error(response: httpx.Response) -> ClusterSyncError:
    """Translate an error response envelope into a cluster sync error."""
    code = None
    message = response.reason_phrase or f"HTTP {response.status_code}"
    details: Dict[str, Any] = {}
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or message
            details = error.get("details") if isinstance(error.get("details"), dict) else {}
        elif body.get("detail"):
            message = str(body["detail"])

    status_code = response.status_code
    if status_code == 403:
        return SyncDisabledError(message) if code == SyncDisabledError.code else Unauthorized(message)
    if status_code == 401:
        return Unauthorized(message)
    if code == IntegrityError.code:
        return IntegrityError(message, expected=details.get("expected"), actual=details.get("actual"))
    if code in ("RELOAD_FAILED", ApplyError.code):
        return ApplyError(message, applied=code == "RELOAD_FAILED", changes=int(details.get("changes", 0)))
    if status_code == 400 or (400 <= status_code < 500 and code == ValidationError.code):
        return ValidationError(f"Remote node rejected request: {message}")
    return TransportError(f"HTTP {status_code}: {message}")
