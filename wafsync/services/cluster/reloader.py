"""
Proxy reloader.

Applies the just-written configuration to the live nginx process by testing
the configuration first and reloading only when the test passes.
"""

import asyncio
import shlex
from dataclasses import dataclass
from typing import Protocol

import structlog

from wafsync.core.config import NginxSettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReloadResult:
    success: bool
    message: str


class Reloader(Protocol):
    async def apply(self) -> ReloadResult:
        ...


class DisabledReloader:
    """Reloader used when nginx management is turned off on this node."""

    async def apply(self) -> ReloadResult:
        return ReloadResult(success=True, message="nginx reload disabled")


class NginxReloader:
    """Runs `nginx -t` followed by `nginx -s reload`."""

    def __init__(self, test_command: str, reload_command: str, timeout: float = 30.0):
        self.test_command = shlex.split(test_command)
        self.reload_command = shlex.split(reload_command)
        self.timeout = timeout

    async def apply(self) -> ReloadResult:
        ok, output = await self._run(self.test_command)
        if not ok:
            logger.error("nginx configuration test failed", output=output)
            return ReloadResult(success=False, message=f"nginx configuration test failed: {output}")

        ok, output = await self._run(self.reload_command)
        if not ok:
            logger.error("nginx reload failed", output=output)
            return ReloadResult(success=False, message=f"nginx reload failed: {output}")

        logger.info("nginx reloaded")
        return ReloadResult(success=True, message="nginx reloaded")

    async def _run(self, command: list[str]) -> tuple[bool, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return False, str(e)

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False, f"{command[0]} timed out after {self.timeout}s"

        output = stdout.decode(errors="replace").strip() if stdout else ""
        return process.returncode == 0, output


def get_reloader(nginx: NginxSettings) -> Reloader:
    """Get the reloader configured for this node."""
    if not nginx.reload_enabled:
        return DisabledReloader()
    return NginxReloader(nginx.test_command, nginx.reload_command, nginx.reload_timeout)
