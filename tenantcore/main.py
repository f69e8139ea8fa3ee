"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from tenantcore.api.backup import router as backup_router
from tenantcore.api.files import router as files_router
from tenantcore.api.health import router as health_router
from tenantcore.api.projects import router as projects_router
from tenantcore.api.settings import router as settings_router
from tenantcore.api.sync import router as sync_router
from tenantcore.config import Settings
from tenantcore.database import Database
from tenantcore.exceptions import (
    ArchiveError,
    InternalServerError,
    ProvisionError,
    RestoreError,
    ToolResolutionError,
)
from tenantcore.services.restore_service import RestoreEngine
from tenantcore.services.schema_service import SchemaProvisioner
from tenantcore.services.settings_service import get_project_files_path
from tenantcore.services.sync_service import MobileSyncCoordinator
from tenantcore.tools.invoker import ToolInvoker
from tenantcore.tools.locator import default_locator

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


async def init_services(app: FastAPI, settings: Settings) -> Database:
    """Open the database and put every long-lived service on ``app.state``."""
    database = Database(settings)
    try:
        database.open()
        await database.create_tables()
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check DATABASE_URL and permissions.", exc
        )
        await database.close()
        raise
    app.state.database = database

    provisioner = SchemaProvisioner(database)
    try:
        async with database.session_factory() as session:
            attached = await provisioner.attach_existing(session)
            files_root = await get_project_files_path(session, settings)
    except Exception as exc:
        logger.critical("Failed to load tenant schemas: %s.", exc)
        await database.close()
        raise
    if attached:
        logger.info("Attached %d tenant schemas", attached)

    try:
        files_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.critical("Failed to create project files directory at %s: %s.", files_root, exc)
        await database.close()
        raise

    invoker = ToolInvoker(default_locator(settings.pg_bin_path), settings.tool_timeout_seconds)
    app.state.invoker = invoker
    app.state.provisioner = provisioner
    app.state.restore_engine = RestoreEngine(database, provisioner, invoker, settings)
    app.state.sync_coordinator = MobileSyncCoordinator(database, settings)
    return database


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    _configure_logging(settings.debug)
    logger.info("Starting tenantcore (debug=%s)", settings.debug)

    database = await init_services(app, settings)

    yield

    try:
        await database.close()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("tenantcore stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="tenantcore",
        description="Tenant data lifecycle: provisioning, backup, restore and mobile sync",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=500)

    cors_origins = (
        settings.cors_origins
        if settings.cors_origins
        else (["http://localhost:5173", "http://localhost:8000"] if settings.debug else [])
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.include_router(health_router)
    app.include_router(projects_router)
    app.include_router(backup_router)
    app.include_router(sync_router)
    app.include_router(files_router)
    app.include_router(settings_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(ProvisionError)
    async def provision_error_handler(request: Request, exc: ProvisionError) -> JSONResponse:
        logger.error(
            "ProvisionError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Failed to provision project schema"},
        )

    @app.exception_handler(ToolResolutionError)
    async def tool_error_handler(request: Request, exc: ToolResolutionError) -> JSONResponse:
        logger.error("ToolResolutionError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=502,
            content={"detail": str(exc)},
        )

    @app.exception_handler(RestoreError)
    async def restore_error_handler(request: Request, exc: RestoreError) -> JSONResponse:
        logger.error("RestoreError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "errors": exc.errors},
        )

    @app.exception_handler(ArchiveError)
    async def archive_error_handler(request: Request, exc: ArchiveError) -> JSONResponse:
        logger.error("ArchiveError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc)},
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "tenantcore.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
