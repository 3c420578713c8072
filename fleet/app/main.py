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
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings as global_settings
from .db import engine
from .errors import FleetError, RateLimited
from .jobs.liveness_sweep import run_sweep
from .migrations import maybe_run_startup_migrations
from .observability import (
    RequestContextMiddleware,
    configure_logging,
    get_request_id,
    maybe_instrument_opentelemetry,
)
from .routes.admin import router as admin_router
from .routes.device_protocol import router as device_router
from .version import __version__


logger = logging.getLogger("fleet")


def _error_response(
    status_code: int,
    error: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    rid = get_request_id() or "unknown"
    error.setdefault("request_id", rid)
    out_headers = dict(headers or {})
    out_headers.setdefault("X-Request-ID", rid)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
        headers=out_headers,
    )


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Allow tests (and advanced deployments) to inject a Settings object
    # without reloading modules.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        _setup_logging(settings)
        _init_db()
        if settings.enable_scheduler:
            _start_scheduler(settings)
        else:
            logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")
        yield
        _stop_scheduler()

    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Greenhouse Fleet API",
        version=__version__,
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request IDs / structured HTTP logs
    app.add_middleware(RequestContextMiddleware)

    # Optional OpenTelemetry instrumentation (ENABLE_OTEL=1).
    maybe_instrument_opentelemetry(
        enabled=settings.enable_otel,
        app=app,
        sqlalchemy_engine=engine,
        service_name=os.getenv("OTEL_SERVICE_NAME") or "greenhouse-fleet",
        service_version=__version__,
        environment=settings.app_env,
    )

    def _runtime_features() -> dict:
        return {
            "admin": {
                "enabled": bool(settings.enable_admin_routes),
                "auth_mode": str(settings.admin_auth_mode),
            },
            "device_protocol": {"enabled": bool(settings.enable_device_routes)},
            "docs": {"enabled": bool(settings.enable_docs)},
            "otel": {"enabled": bool(settings.enable_otel)},
            "liveness": {
                "offline_after_s": int(settings.offline_after_s),
                "sweep_interval_s": int(settings.liveness_sweep_interval_s),
                "scheduler_enabled": bool(settings.enable_scheduler),
            },
            "limits": {
                "rate_limit_enabled": bool(settings.rate_limit_enabled),
                "device_requests_per_min": int(settings.device_rate_limit_requests_per_min),
            },
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "version": __version__, "env": settings.app_env, "features": _runtime_features()}

    @app.exception_handler(FleetError)
    async def _fleet_error_handler(request: Request, exc: FleetError):
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after_s)
        if exc.http_status >= 500:
            logger.error(
                "fleet_error",
                extra={"fields": {"code": exc.code, "path": str(request.url.path)}},
            )
        return _error_response(exc.http_status, exc.to_payload(), headers=headers)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        # Preserve explicit error envelopes when callers supply them.
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error = dict(exc.detail["error"])
        else:
            error = {"code": "HTTP_ERROR", "message": str(exc.detail)}
        return _error_response(exc.status_code, error, headers=dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(
            422,
            {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            },
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        # Provide a stable request_id for support/debugging without leaking details.
        logger.exception(
            "unhandled_exception",
            extra={"fields": {"path": str(request.url.path), "method": request.method}},
        )
        return _error_response(500, {"code": "INTERNAL", "message": "Internal server error"})

    # Baseline security headers. The API serves JSON only.
    @app.middleware("http")
    async def _security_headers(request, call_next):
        resp = await call_next(request)

        path = request.url.path or ""
        is_docs_route = path.startswith("/docs") or path.startswith("/redoc")

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")

        if is_docs_route:
            # Swagger UI / Redoc need their inline bootstrap script.
            resp.headers.setdefault(
                "Content-Security-Policy",
                "default-src 'self'; base-uri 'self'; object-src 'none'; frame-ancestors 'none'; "
                "img-src 'self' data: https:; style-src 'self' 'unsafe-inline' https:; "
                "script-src 'self' 'unsafe-inline' https:; connect-src 'self'",
            )
        else:
            resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")

        # HSTS only when served over HTTPS. Local dev is usually HTTP.
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "").lower()
        if proto == "https":
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

        return resp

    @app.get("/readyz", include_in_schema=False)
    def readyz():
        """Readiness probe: DB reachable and migrations applied."""

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        except SQLAlchemyError as e:
            raise HTTPException(status_code=503, detail=f"not ready: {type(e).__name__}") from e

        return {"ready": True}

    @app.get("/api/v1/health")
    def health_api():
        return {"ok": True, "env": settings.app_env, "version": app.version, "features": _runtime_features()}

    # --- Route surface ---
    # Device protocol (heartbeat / poll / confirm)
    if settings.enable_device_routes:
        app.include_router(device_router)
    else:
        logger.info("Device routes disabled (ENABLE_DEVICE_ROUTES=false)")

    # Operator surface (projects / devices / commands)
    if settings.enable_admin_routes:
        app.include_router(admin_router)
    else:
        logger.info("Admin routes disabled (ENABLE_ADMIN_ROUTES=false)")

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for err in exc.errors():
        item = {k: v for k, v in err.items() if k in {"type", "loc", "msg"}}
        out.append(item)
    return out


def _setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)
    logger.info("Logging initialized (level=%s)", settings.log_level)


def _init_db() -> None:
    # Apply schema migrations when enabled (AUTO_MIGRATE).
    maybe_run_startup_migrations(engine=engine)
    logger.info("DB init complete")


_scheduler: BackgroundScheduler | None = None


def _start_scheduler(settings: Settings) -> None:
    global _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        func=_liveness_job,
        trigger="interval",
        seconds=settings.liveness_sweep_interval_s,
        id="liveness_sweep",
        max_instances=1,
        replace_existing=True,
        coalesce=True,
    )

    scheduler.start()
    _scheduler = scheduler
    logger.info(
        "Scheduler started (liveness_sweep_interval_s=%s, offline_after_s=%s)",
        settings.liveness_sweep_interval_s,
        settings.offline_after_s,
    )


def _stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")


def _liveness_job() -> None:
    # A failed pass is logged; the next interval retries.
    try:
        run_sweep()
    except SQLAlchemyError:
        logger.exception("liveness_sweep failed")


# ASGI entrypoint
app = create_app()
