#!/usr/bin/env python
"""
WAF Cluster Sync - Backend Application Entry Point

Runs the node API server. The same process serves the administrative API,
the inter-node sync endpoints and the sync timers, in master or slave mode.

Usage:
    # Development mode (with hot reload):
    python main.py

    # Or use uvicorn directly:
    uvicorn wafsync.main:app --host 0.0.0.0 --port 3001

Environment Variables:
    - APP_DEBUG=true: Enable debug mode
    - DEV_AUTO_RELOAD=true: Enable hot reload in debug mode
    - DB_URL=sqlite+aiosqlite:///./wafsync.db: Use a local SQLite database
    - ADMIN_API_TOKEN=...: Bearer token for the administrative API
"""

from pathlib import Path

import uvicorn

from wafsync.core.config import settings

package_dir = Path(__file__).parent.resolve() / "wafsync"


def main() -> None:
    """Run the FastAPI application with hot reload in development mode."""

    print("=" * 60)
    print("Starting WAF Cluster Sync Backend")
    print("=" * 60)
    print(f"   Environment: {settings.app.app_env}")
    print(f"   Debug Mode: {settings.app.app_debug}")
    print(f"   Hot Reload: {settings.app.app_debug and settings.dev_auto_reload}")
    print(f"   Host: {settings.app.api_host}:{settings.app.api_port}")
    print("=" * 60)
    print()

    uvicorn.run(
        "wafsync.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        reload=settings.app.app_debug and settings.dev_auto_reload,
        # Sync timers and the in-flight guard live in this process
        workers=1,
        log_level=settings.log.level.lower(),
        access_log=settings.log.requests,
        reload_dirs=[str(package_dir)] if settings.app.app_debug else None,
        reload_delay=0.5,
    )


if __name__ == "__main__":
    main()
