"""
HTTP application for dkv.

``create_app`` wires one backend, one notifier and the services built on them
into a FastAPI app. Tests pass their own backend and notifier; servers run
the factory with the environment configuration
(``uvicorn dkv.api.main:create_app --factory``).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..core.backend import KVBackend
from ..core.config import VERSION, Settings, get_backend, get_notifier, load_settings, validate_config
from ..core.errors import DKVError, MalformedInput
from ..core.notify import Notifier
from ..util.logging import logger
from . import alerts, kv, watch
from .deps import Services
from .schemas import HealthResponse

SWEEP_TASK = "deadman_sweep"


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[KVBackend] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    settings = settings or load_settings()
    issues = validate_config(settings)
    if issues:
        for issue in issues:
            logger.error(f"Configuration issue: {issue}")
        raise ValueError(f"Invalid configuration: {'; '.join(issues)}")

    services = Services.build(
        settings,
        backend if backend is not None else get_backend(settings),
        notifier if notifier is not None else get_notifier(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.deadman_enabled:
            services.scheduler.register_task(SWEEP_TASK, settings.deadman_sweep_interval_sec, services.deadman.sweep)
            services.scheduler.start()
        logger.log_operation("startup", "ready", {"backend": services.backend.name, "version": VERSION})
        try:
            yield
        finally:
            if settings.deadman_enabled:
                await services.scheduler.stop()
                services.scheduler.unregister_task(SWEEP_TASK)
            logger.log_operation("shutdown", "done")

    app = FastAPI(
        title="dkv",
        version=VERSION,
        description="Versioned JSON store with change streams, dead-man triggers and notifications",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.services = services

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[kv.VERSIONSTAMP_HEADER],
        )

    @app.exception_handler(DKVError)
    async def dkv_error_handler(request: Request, exc: DKVError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error_type": exc.error_type},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=MalformedInput.status_code,
            content={"detail": str(exc.errors()), "error_type": MalformedInput.error_type},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions."""
        logger.error(f"Unhandled exception: {exc}")
        content = {"detail": "Internal server error", "error_type": DKVError.error_type}
        if settings.debug:
            content["debug"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        db_health = services.backend.health_check()
        return HealthResponse(
            status="healthy" if db_health else "unhealthy",
            version=VERSION,
            backend=services.backend.name,
            db_health=db_health,
            deadman_enabled=settings.deadman_enabled,
            scheduler=services.scheduler.get_status(),
        )

    app.include_router(kv.list_router)
    app.include_router(watch.router)
    app.include_router(alerts.router)
    app.include_router(kv.router, prefix="/rest")
    app.include_router(kv.router, prefix="/r", include_in_schema=False)

    return app