from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError

from ..errors import BadPayload
from ..schemas import MetricSample, SampleMetrics


# Metric keys copied from the payload into SampleMetrics. Anything else the
# agent sends is dropped.
_METRIC_KEYS = (
    "cpuPercent",
    "memUsedGB",
    "memTotalGB",
    "diskUsedGB",
    "diskFreeGB",
    "diskTotalGB",
    "disks",
    "processCount",
    "uptimeSec",
    "cpuTempC",
    "gpuTempC",
    "gpuMemoryTempC",
    "boardTempC",
    "cpuTempMaxC",
    "gpuHotspotTempC",
    "temps",
    "net",
)

# Older agents used different names for the temperature annotations.
_FALLBACK_KEYS = {
    "tempSource": ("tempSource", "tempProvider"),
    "tempReason": ("tempReason", "tempStatus"),
}


def normalize_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    return normalize_utc(dt)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an agent timestamp, returning None when it is unusable.

    Accepts ISO-8601 strings and epoch milliseconds.
    """

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return _parse_dt(value)
        except ValueError:
            return None
    return None


def extract_metrics(body: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the metrics object of a heartbeat body.

    Agents send either `{"metrics": {...}}` or the metric fields next to
    `deviceId`/`hostname`; both shapes resolve to the same mapping.
    """

    wrapped = body.get("metrics")
    if isinstance(wrapped, Mapping):
        return wrapped
    return body


def _metric_fields(metrics: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in _METRIC_KEYS:
        if key in metrics:
            fields[key] = metrics[key]

    for target, candidates in _FALLBACK_KEYS.items():
        for key in candidates:
            if metrics.get(key) is not None:
                fields[target] = metrics[key]
                break
        else:
            fields[target] = None

    fields["diskLabel"] = metrics.get("diskLabel")
    return fields


def _optional_str(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def build_sample(
    *,
    device_id: str,
    body: Any,
    now: datetime | None = None,
) -> MetricSample:
    """Normalize one heartbeat body into a MetricSample.

    Fields the agent did not send stay unset on the sample. Raises BadPayload
    when the body is not an object or a metric has the wrong type.
    """

    if not isinstance(body, Mapping):
        raise BadPayload("heartbeat body must be a JSON object")

    metrics = extract_metrics(body)
    timestamp = (
        parse_timestamp(metrics.get("timestamp"))
        or parse_timestamp(body.get("timestamp"))
        or normalize_utc(now or datetime.now(timezone.utc))
    )

    try:
        sample_metrics = SampleMetrics.model_validate(_metric_fields(metrics))
    except ValidationError as exc:
        raise BadPayload(
            "heartbeat metrics failed validation",
            errors=[
                {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()[:10]
            ],
        ) from exc

    return MetricSample(
        timestamp=timestamp,
        device_id=device_id,
        agent_version=_optional_str(body.get("agentVersion"), "unknown"),
        hostname=_optional_str(body.get("hostname"), "unknown"),
        metrics=sample_metrics,
    )


def parse_log_line(line: str) -> MetricSample | None:
    """Parse one durable-log line; malformed lines come back as None."""

    text = line.strip()
    if not text:
        return None
    try:
        return MetricSample.model_validate_json(text)
    except ValidationError:
        return None


def sample_ts(sample: MetricSample) -> datetime:
    return normalize_utc(sample.timestamp)
