from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, settings as global_settings
from .core import TelemetryCore, build_core
from .errors import PulseboardError
from .jobs.rotate_logs import run_rotation
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
    maybe_instrument_opentelemetry,
)
from .routes.agent import router as agent_router
from .routes.agent_config import router as agent_config_router
from .routes.debug import router as debug_router
from .routes.devices import router as devices_router
from .routes.events import router as events_router
from .routes.logs import router as logs_router
from .routes.metrics import router as metrics_router
from .version import __version__


logger = logging.getLogger("pulseboard")


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Allow tests (and advanced deployments) to inject a Settings object
    # without reloading modules.
    settings = _settings or global_settings
    core = build_core(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _setup_logging(settings)
        scheduler = _start_scheduler(settings, core) if settings.enable_scheduler else None
        if scheduler is None:
            logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("Scheduler stopped")
            core.close()

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Pulseboard Telemetry API",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.max_request_body_bytes > 0:
        from .middleware.limits import BodySizeLimitMiddleware

        app.add_middleware(
            BodySizeLimitMiddleware,
            max_body_bytes=settings.max_request_body_bytes,
            paths=["/api/agent", "/api/devices"],
        )

    # Request IDs / structured HTTP logs
    app.add_middleware(RequestContextMiddleware)

    maybe_instrument_opentelemetry(
        enabled=settings.enable_otel,
        app=app,
        service_name=os.getenv("OTEL_SERVICE_NAME") or "pulseboard",
        service_version=__version__,
        environment=settings.app_env,
    )

    def _runtime_features() -> dict:
        return {
            "docs": {"enabled": bool(settings.enable_docs)},
            "otel": {"enabled": bool(settings.enable_otel)},
            "scheduler": {"enabled": bool(settings.enable_scheduler)},
            "routes": {
                "ingest": bool(settings.enable_ingest_routes),
                "read": bool(settings.enable_read_routes),
            },
            "durable_log": {
                "write_mode": settings.durable_log_write_mode,
                "max_bytes": int(settings.durable_log_max_bytes),
                "keep_segments": int(settings.durable_log_keep_segments),
            },
            "agent_apply": {"enabled": bool(settings.agent_apply_enabled)},
            "limits": {
                "max_request_body_bytes": int(settings.max_request_body_bytes),
                "rate_limit_enabled": bool(settings.rate_limit_enabled),
                "heartbeat_rate_limit_per_min": int(settings.heartbeat_rate_limit_per_min),
            },
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "version": __version__, "env": settings.app_env}

    @app.get("/api/health")
    def health_api():
        return {
            "ok": True,
            "env": settings.app_env,
            "version": app.version,
            "features": _runtime_features(),
            "pipeline": {
                "devices": len(core.registry),
                "buffered_samples": len(core.buffer),
                "live_subscribers": core.pubsub.subscriber_count,
                "durable_log_failures": core.log_writer.failures,
            },
        }

    _install_error_handlers(app)
    app.middleware("http")(_security_headers)

    # --- Route surface ---
    # Ingest surface (device agents)
    if settings.enable_ingest_routes:
        app.include_router(agent_router)
    else:
        logger.info("Ingest routes disabled (ENABLE_INGEST_ROUTES=false)")

    # Read surface (dashboard)
    if settings.enable_read_routes:
        app.include_router(devices_router)
        app.include_router(metrics_router)
        app.include_router(events_router)
        app.include_router(logs_router)
        app.include_router(debug_router)
        app.include_router(agent_config_router)
    else:
        logger.info("Read routes disabled (ENABLE_READ_ROUTES=false)")

    return app


def _error_response(
    status_code: int,
    error: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    rid = get_request_id() or "unknown"
    error.setdefault("request_id", rid)
    out_headers = dict(headers or {})
    out_headers.setdefault("X-Request-ID", rid)
    return JSONResponse(status_code=status_code, content={"error": error}, headers=out_headers)


def _install_error_handlers(app: FastAPI) -> None:
    """Render every failure as {"error": {code, message, request_id, ...}}."""

    @app.exception_handler(PulseboardError)
    async def _pulseboard_error(request: Request, exc: PulseboardError):
        if exc.status_code >= 500:
            logger.error(
                "request_failed",
                extra={"fields": {"path": request.url.path, "code": exc.code}},
            )
        return _error_response(exc.status_code, exc.envelope()["error"], exc.headers())

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            error = dict(detail["error"])
        else:
            error = {"code": "HTTP_ERROR", "message": str(detail)}
        return _error_response(exc.status_code, error, dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            422,
            {"code": "VALIDATION_ERROR", "message": "Request validation failed", "details": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": request.url.path, "method": request.method}},
        )
        return _error_response(500, {"code": "INTERNAL", "message": "Internal server error"})


async def _security_headers(request: Request, call_next):
    resp = await call_next(request)
    for name, value in _SECURITY_HEADERS:
        resp.headers.setdefault(name, value)
    forwarded = request.headers.get("x-forwarded-proto") or request.url.scheme or ""
    if forwarded.lower() == "https":
        resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return resp


_SECURITY_HEADERS = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "DENY"),
    ("Referrer-Policy", "no-referrer"),
)


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _start_scheduler(settings: Settings, core: TelemetryCore) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        func=_rotation_job,
        args=[core],
        trigger="interval",
        seconds=settings.log_rotation_interval_s,
        id="durable_log_rotation",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )

    scheduler.start()
    logger.info("Scheduler started (log_rotation_interval_s=%s)", settings.log_rotation_interval_s)
    return scheduler


def _rotation_job(core: TelemetryCore) -> None:
    try:
        run_rotation(core.log)
    except Exception:
        logger.exception("durable_log_rotation failed")


# ASGI entrypoint
app = create_app()
