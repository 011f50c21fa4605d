"""
Main FastAPI application entry point.
"""

import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from wafsync.api.v1 import health, node_sync, slave_nodes, system_config
from wafsync.core.config import LogSettings, Settings, get_settings
from wafsync.services.cluster.errors import ApplyError, ClusterSyncError, IntegrityError
from wafsync.services.cluster.runtime import ClusterRuntime, build_runtime


def configure_logging(log: LogSettings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log.level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log.format == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def _error_response(request: Request, status_code: int, code, message, details=None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "meta": {
                "request_id": getattr(request.state, "request_id", None),
            },
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info("Starting application", version=settings.app.app_version, env=settings.app.app_env)

    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(settings)
    runtime: ClusterRuntime = app.state.runtime
    await runtime.startup()

    if not settings.security.admin_api_token:
        logger.warning("ADMIN_API_TOKEN is not set, administrative API is unauthenticated")

    # Log important configuration
    logger.info(
        "Configuration loaded",
        app_name=settings.app.app_name,
        db_sqlite=settings.database.is_sqlite,
        scheduler_enabled=settings.node_sync.scheduler_enabled,
        master_auto_push=settings.node_sync.master_auto_push,
        nginx_reload_enabled=settings.nginx.reload_enabled,
        cors_origins=settings.app.cors_origins_list,
    )

    yield

    # Shutdown
    logger.info("Shutting down application")
    await runtime.shutdown()


def create_app(settings: Optional[Settings] = None, runtime: Optional[ClusterRuntime] = None) -> FastAPI:
    """
    Create the FastAPI application.

    A prebuilt runtime can be passed in; otherwise one is built from settings
    in the lifespan.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    app = FastAPI(
        title=settings.app.app_name,
        version=settings.app.app_version,
        description="WAF cluster configuration sync - Backend API",
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url="/redoc" if settings.docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime

    # ========================================================================
    # Middleware
    # ========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.cors_origins_list,
        allow_credentials=settings.app.cors_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests and add request ID."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        if settings.log.requests:
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
                request_id=request_id,
            )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            if settings.log.requests:
                duration = time.time() - start_time
                logger.info(
                    "Request completed",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                    request_id=request_id,
                )

            return response

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=round(duration * 1000, 2),
                request_id=request_id,
            )
            raise

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(ClusterSyncError)
    async def cluster_sync_exception_handler(request: Request, exc: ClusterSyncError):
        """Handle cluster sync errors."""
        details = None
        if isinstance(exc, IntegrityError):
            details = {"expected": exc.expected, "actual": exc.actual}
        elif isinstance(exc, ApplyError):
            details = {"applied": exc.applied, "changes": exc.changes}

        if exc.status_code >= 500:
            logger.error("Cluster sync request failed", path=request.url.path, code=exc.code, error=exc.message)

        return _error_response(request, exc.status_code, exc.code, exc.message, details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        return _error_response(request, exc.status_code, exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors."""
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append({
                "field": field,
                "message": error["msg"],
                "type": error["type"],
            })

        return _error_response(request, 422, "VALIDATION_ERROR", "Request validation failed", errors)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
            exc_info=exc,
        )
        message = "An internal error occurred" if not settings.app.app_debug else str(exc)
        return _error_response(request, 500, "INTERNAL_ERROR", message)

    # ========================================================================
    # Routes
    # ========================================================================

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(slave_nodes.router, prefix="/api/v1")
    app.include_router(system_config.router, prefix="/api/v1")
    app.include_router(node_sync.router, prefix="/api/v1")

    return app


configure_logging(get_settings().log)

app = create_app()
