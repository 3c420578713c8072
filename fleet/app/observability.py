from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


# -----------------------------
# Request context (request_id)
# -----------------------------


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


@dataclass
class _OtelRuntime:
    http_requests_total: Any | None = None
    http_request_duration_ms: Any | None = None
    heartbeats_total: Any | None = None
    command_transitions_total: Any | None = None
    liveness_sweep_duration_ms: Any | None = None


_otel_runtime: _OtelRuntime | None = None


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def _extract_request_id(request: Request) -> str:
    rid = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
    if rid and rid.strip():
        return rid.strip()[:128]
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request.

    The id is taken from X-Request-ID / X-Correlation-ID when present, stored in
    a ContextVar for log records and error envelopes, and echoed back in the
    X-Request-ID response header. One "fleet.http" record is logged per request.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _extract_request_id(request)
        token_rid = request_id_ctx.set(rid)

        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = int((time.perf_counter() - start) * 1000)
                logging.getLogger("fleet.http").exception(
                    "request_error",
                    extra={
                        "httpRequest": _http_request_payload(request, status=500, duration_ms=duration_ms),
                        "fields": {"duration_ms": duration_ms},
                    },
                )
                record_http_request_metric(
                    method=request.method,
                    route=_route_template(request),
                    status_code=500,
                    duration_ms=duration_ms,
                )
                raise

            response.headers["X-Request-ID"] = rid

            duration_ms = int((time.perf_counter() - start) * 1000)
            logging.getLogger("fleet.http").info(
                "request",
                extra={
                    "httpRequest": _http_request_payload(
                        request, status=response.status_code, duration_ms=duration_ms
                    ),
                    "fields": {"duration_ms": duration_ms},
                },
            )
            record_http_request_metric(
                method=request.method,
                route=_route_template(request),
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            return response
        finally:
            request_id_ctx.reset(token_rid)


def _http_request_payload(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestMethod": request.method,
        "requestUrl": request.url.path,
        "status": status,
        "latency": f"{duration_ms / 1000:.3f}s",
    }
    if request.client:
        payload["remoteIp"] = request.client.host
    user_agent = request.headers.get("user-agent")
    if user_agent:
        payload["userAgent"] = user_agent
    return payload


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if isinstance(path, str) and path:
        return path
    return request.url.path


# -----------------------------
# Metrics (no-ops unless OTEL is on)
# -----------------------------


def record_http_request_metric(*, method: str, route: str, status_code: int, duration_ms: float) -> None:
    runtime = _otel_runtime
    if runtime is None:
        return

    attrs = {
        "http.method": method.upper(),
        "http.route": route or "/",
        "http.status_code": int(status_code),
    }
    if runtime.http_requests_total is not None:
        runtime.http_requests_total.add(1, attributes=attrs)
    if runtime.http_request_duration_ms is not None:
        runtime.http_request_duration_ms.record(float(duration_ms), attributes=attrs)


def record_heartbeat_metric(*, previous_state: str) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.heartbeats_total is None:
        return
    runtime.heartbeats_total.add(1, attributes={"previous_state": previous_state})


def record_command_transition_metric(*, transition: str, count: int = 1) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.command_transitions_total is None or count <= 0:
        return
    runtime.command_transitions_total.add(int(count), attributes={"transition": transition})


def record_liveness_sweep_metric(*, duration_ms: float, success: bool, flipped: int = 0) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.liveness_sweep_duration_ms is None:
        return
    runtime.liveness_sweep_duration_ms.record(
        float(duration_ms),
        attributes={"success": bool(success), "flipped": int(flipped)},
    )


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``fields`` and ``httpRequest`` extras are kept as objects."""

    def __init__(self, service_name: str = "greenhouse-fleet") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        rid = getattr(record, "request_id", None)
        if rid:
            payload["request_id"] = rid

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        http_request = getattr(record, "httpRequest", None)
        if isinstance(http_request, dict):
            payload["httpRequest"] = http_request

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(*, level: int, log_format: str) -> None:
    """Configure root logging as "json" (structured) or "text" (human-readable)."""

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)


# -----------------------------
# OpenTelemetry (optional)
# -----------------------------


def maybe_instrument_opentelemetry(
    *,
    enabled: bool,
    app,
    sqlalchemy_engine,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Optionally instrument FastAPI and SQLAlchemy with OpenTelemetry.

    Best-effort: missing optional dependencies or exporter errors are logged and
    the service keeps starting. Exporters are configured via OTEL_* env vars;
    in dev without an endpoint, console exporters are used.
    """

    global _otel_runtime

    if not enabled:
        _otel_runtime = None
        return

    log = logging.getLogger("fleet.otel")

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
    except ImportError:  # pragma: no cover
        log.warning(
            "OpenTelemetry is enabled (ENABLE_OTEL=1) but dependencies are not installed. "
            "Install the optional 'otel' extra.",
            extra={"fields": {"hint": "pip install 'greenhouse-fleet[otel]'"}},
        )
        return

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    metric_readers: list[Any] = []
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            metric_readers.append(PeriodicExportingMetricReader(OTLPMetricExporter()))
            log.info("OpenTelemetry OTLP exporters enabled", extra={"fields": {"endpoint": endpoint}})
        except ImportError:  # pragma: no cover
            log.exception("Failed to configure OTLP exporters; telemetry will be dropped")
    elif environment == "dev":
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        metric_readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
        log.info("OpenTelemetry console exporters enabled (dev)")
    else:
        log.warning(
            "ENABLE_OTEL=1 but no OTEL exporter endpoint is configured; telemetry will be dropped",
            extra={"fields": {"hint": "Set OTEL_EXPORTER_OTLP_ENDPOINT"}},
        )

    metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
    metrics.set_meter_provider(metric_provider)
    meter = metrics.get_meter(service_name, service_version)
    _otel_runtime = _OtelRuntime(
        http_requests_total=meter.create_counter(
            "fleet.http.server.requests",
            unit="{request}",
            description="HTTP request count by route/method/status.",
        ),
        http_request_duration_ms=meter.create_histogram(
            "fleet.http.server.duration",
            unit="ms",
            description="HTTP request latency by route/method/status.",
        ),
        heartbeats_total=meter.create_counter(
            "fleet.liveness.heartbeats",
            unit="{heartbeat}",
            description="Accepted heartbeats by the device's previous state.",
        ),
        command_transitions_total=meter.create_counter(
            "fleet.commands.transitions",
            unit="{command}",
            description="Command lifecycle transitions (enqueued/confirmed/cancelled).",
        ),
        liveness_sweep_duration_ms=meter.create_histogram(
            "fleet.liveness.sweep.duration",
            unit="ms",
            description="Offline sweep job duration.",
        ),
    )

    SQLAlchemyInstrumentor().instrument(engine=sqlalchemy_engine, tracer_provider=provider)

    def _request_hook(span, scope) -> None:
        if span is None or not span.is_recording():
            return
        rid = get_request_id()
        if rid:
            span.set_attribute("fleet.request_id", rid)

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider,
        server_request_hook=_request_hook,
    )
