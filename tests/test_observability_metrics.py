from __future__ import annotations

import json
import logging

from api.app import observability as obs


class _DummyCounter:
    def __init__(self) -> None:
        self.calls: list[tuple[int, dict[str, object] | None]] = []

    def add(self, value: int, *, attributes: dict[str, object] | None = None) -> None:
        self.calls.append((value, attributes))


class _DummyHistogram:
    def __init__(self) -> None:
        self.calls: list[tuple[float, dict[str, object] | None]] = []

    def record(self, value: float, *, attributes: dict[str, object] | None = None) -> None:
        self.calls.append((value, attributes))


def _with_runtime(runtime, fn) -> None:
    prev = obs._otel_runtime
    obs._otel_runtime = runtime
    try:
        fn()
    finally:
        obs._otel_runtime = prev


def test_http_request_metric_records_route_method_status() -> None:
    counter = _DummyCounter()
    histogram = _DummyHistogram()
    runtime = obs._OtelRuntime(http_requests_total=counter, http_request_duration_ms=histogram)

    _with_runtime(
        runtime,
        lambda: obs.record_http_request_metric(
            method="get", route="/api/metrics/history", status_code=200, duration_ms=12.5
        ),
    )

    attrs = {"http.method": "GET", "http.route": "/api/metrics/history", "http.status_code": 200}
    assert counter.calls == [(1, attrs)]
    assert histogram.calls == [(12.5, attrs)]


def test_heartbeat_and_durable_log_metrics() -> None:
    heartbeats = _DummyCounter()
    failures = _DummyCounter()
    runtime = obs._OtelRuntime(heartbeats_total=heartbeats, durable_log_failures_total=failures)

    def record() -> None:
        obs.record_heartbeat_metric(outcome="accepted")
        obs.record_heartbeat_metric(outcome="unauthenticated")
        obs.record_durable_log_failure_metric(reason="queue_full")

    _with_runtime(runtime, record)

    assert heartbeats.calls == [(1, {"outcome": "accepted"}), (1, {"outcome": "unauthenticated"})]
    assert failures.calls == [(1, {"reason": "queue_full"})]


def test_metrics_are_noops_without_runtime() -> None:
    _with_runtime(None, lambda: obs.record_heartbeat_metric(outcome="accepted"))


def test_json_formatter_includes_fields_and_request_id() -> None:
    record = logging.LogRecord("pulseboard.ingest", logging.INFO, __file__, 1, "heartbeat", None, None)
    record.fields = {"device_id": "dev-1"}
    record.request_id = "rid-1"

    payload = json.loads(obs.JsonFormatter().format(record))

    assert payload["message"] == "heartbeat"
    assert payload["logger"] == "pulseboard.ingest"
    assert payload["service"] == "pulseboard"
    assert payload["fields"] == {"device_id": "dev-1"}
    assert payload["request_id"] == "rid-1"


def test_text_formatter_appends_fields() -> None:
    record = logging.LogRecord("pulseboard", logging.WARNING, __file__, 1, "durable_log_append_failed", None, None)
    record.fields = {"reason": "queue_full"}

    line = obs.TextFormatter().format(record)
    assert line.endswith("durable_log_append_failed reason=queue_full")
