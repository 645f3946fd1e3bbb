from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from ..core import TelemetryCore, get_core
from ..errors import BadPayload
from ..schemas import HistoryOut


router = APIRouter(prefix="/api", tags=["metrics"])

DEFAULT_LIMIT = 300
MAX_LIMIT = 2000
FALLBACK_WINDOW = timedelta(hours=1)


def _clamp_limit(raw: Optional[str]) -> int:
    try:
        value = int((raw or "").strip(), 10)
    except ValueError:
        return DEFAULT_LIMIT
    return max(1, min(value, MAX_LIMIT))


@router.get("/metrics")
def recent_metrics(
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    limit: Optional[str] = Query(default=None),
    core: TelemetryCore = Depends(get_core),
) -> dict[str, Any]:
    """Recent samples, newest last.

    Served from the in-memory buffer while it holds anything for the request;
    after a restart (or once a device's samples have been evicted) the last
    hour is read back from the durable log instead.
    """

    n = _clamp_limit(limit)
    samples = core.buffer.recent()
    if device_id:
        samples = [s for s in samples if s.device_id == device_id]
    samples = samples[-n:]

    if not samples:
        cutoff = datetime.now(timezone.utc) - FALLBACK_WINDOW
        if device_id:
            samples = core.log.read_recent(device_id, cutoff, n)
        else:
            samples = core.log.read_recent_all_devices(cutoff, n)

    return {"samples": [s.to_wire() for s in samples]}


@router.get("/metrics/history", response_model=HistoryOut, response_model_exclude_none=True)
def metrics_history(
    device_id: Optional[str] = Query(default=None, alias="deviceId"),
    minutes: Optional[str] = Query(default=None),
    core: TelemetryCore = Depends(get_core),
) -> dict[str, Any]:
    if not device_id:
        raise BadPayload("deviceId is required")
    return core.history.history(device_id, minutes if minutes is not None else 60).to_wire()
