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
# Request context
# -----------------------------


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


@dataclass
class _OtelRuntime:
    http_requests_total: Any | None = None
    http_request_duration_ms: Any | None = None
    heartbeats_total: Any | None = None
    durable_log_failures_total: Any | None = None


_otel_runtime: _OtelRuntime | None = None


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


_http_log = logging.getLogger("pulseboard.http")


def _incoming_request_id(request: Request) -> str:
    for header in ("X-Request-ID", "X-Correlation-ID"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value[:128]
    return uuid.uuid4().hex


def _route_template(request: Request) -> str:
    path = getattr(request.scope.get("route"), "path", None)
    return path if isinstance(path, str) and path else request.url.path


def _http_request_payload(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestMethod": request.method,
        "requestUrl": request.url.path,
        "status": status,
        "latency": f"{duration_ms / 1000:.3f}s",
    }
    if request.client:
        payload["remoteIp"] = request.client.host
    if request.headers.get("user-agent"):
        payload["userAgent"] = request.headers["user-agent"]
    return payload


def _finish_request(request: Request, *, status: int, started: float, failed: bool = False) -> None:
    duration_ms = int((time.perf_counter() - started) * 1000)
    fields: dict[str, Any] = {"duration_ms": duration_ms, "route": _route_template(request)}
    device_id = request.headers.get("x-device-id")
    if device_id:
        fields["device_id"] = device_id
    extra = {
        "httpRequest": _http_request_payload(request, status=status, duration_ms=duration_ms),
        "fields": fields,
    }
    if failed:
        _http_log.exception("request_error", extra=extra)
    else:
        _http_log.info("request", extra=extra)
    record_http_request_metric(
        method=request.method,
        route=fields["route"],
        status_code=status,
        duration_ms=duration_ms,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of a request and log the outcome.

    The caller's X-Request-ID (or X-Correlation-ID) is reused when present.
    Agent requests also carry their device id into the log record.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _incoming_request_id(request)
        ctx_token = request_id_ctx.set(rid)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                _finish_request(request, status=500, started=started, failed=True)
                raise
            response.headers["X-Request-ID"] = rid
            _finish_request(request, status=response.status_code, started=started)
            return response
        finally:
            request_id_ctx.reset(ctx_token)


# -----------------------------
# Metrics (no-ops unless ENABLE_OTEL=1)
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


def record_heartbeat_metric(*, outcome: str) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.heartbeats_total is None:
        return
    runtime.heartbeats_total.add(1, attributes={"outcome": outcome})


def record_durable_log_failure_metric(*, reason: str) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.durable_log_failures_total is None:
        return
    runtime.durable_log_failures_total.add(1, attributes={"reason": reason})


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; `extra={"fields": {...}}` lands under "fields"."""

    def __init__(self, service_name: str = "pulseboard") -> None:
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


class TextFormatter(logging.Formatter):
    """Human-readable lines with structured fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def configure_logging(*, level: int, log_format: str) -> None:
    """Install one stderr handler on the root logger.

    `log_format` is "json" for structured lines or anything else for text.
    Calling it again replaces the handler instead of stacking another.
    """

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if log_format.strip().lower() == "json" else TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # pulseboard.http already emits one record per request.
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))


# -----------------------------
# OpenTelemetry (optional)
# -----------------------------


def _instruments(meter: Any) -> _OtelRuntime:
    return _OtelRuntime(
        http_requests_total=meter.create_counter(
            "pulseboard.http.server.requests",
            unit="{request}",
            description="HTTP requests by route, method and status.",
        ),
        http_request_duration_ms=meter.create_histogram(
            "pulseboard.http.server.duration",
            unit="ms",
            description="HTTP request latency by route, method and status.",
        ),
        heartbeats_total=meter.create_counter(
            "pulseboard.ingest.heartbeats",
            unit="{heartbeat}",
            description="Heartbeats by outcome.",
        ),
        durable_log_failures_total=meter.create_counter(
            "pulseboard.durable_log.failures",
            unit="{sample}",
            description="Samples that never reached the durable log.",
        ),
    )


def _attach_exporters(provider: Any, *, environment: str, log: logging.Logger) -> list[Any]:
    """Wire span exporters onto `provider` and return the metric readers."""

    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
        log.info("otel_exporters", extra={"fields": {"kind": "otlp", "endpoint": endpoint}})
        return [PeriodicExportingMetricReader(OTLPMetricExporter())]

    if environment == "dev":
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        log.info("otel_exporters", extra={"fields": {"kind": "console"}})
        return [PeriodicExportingMetricReader(ConsoleMetricExporter())]

    log.warning(
        "otel_exporters_missing",
        extra={"fields": {"hint": "set OTEL_EXPORTER_OTLP_ENDPOINT; spans and metrics are dropped"}},
    )
    return []


def maybe_instrument_opentelemetry(
    *,
    enabled: bool,
    app: Any,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Instrument the app with OpenTelemetry when `enabled`.

    The SDK is an optional extra; when it is not installed this logs a warning
    and the metric helpers above stay no-ops.
    """

    global _otel_runtime
    _otel_runtime = None
    if not enabled:
        return

    log = logging.getLogger("pulseboard.otel")
    try:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
    except ImportError:  # pragma: no cover
        log.warning("otel_unavailable", extra={"fields": {"hint": "pip install 'pulseboard[otel]'"}})
        return

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    readers = _attach_exporters(tracer_provider, environment=environment, log=log)
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    _otel_runtime = _instruments(metrics.get_meter(service_name, service_version))
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)
