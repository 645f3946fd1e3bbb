from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..core import TelemetryCore, get_core
from ..errors import NotFound
from ..services.log_tail import clamp_minutes, read_recent_log_lines, resolve_log_path


router = APIRouter(prefix="/api", tags=["logs"])


@router.get("/logs/recent", response_class=PlainTextResponse)
async def recent_logs(
    minutes: Optional[str] = Query(default=None),
    core: TelemetryCore = Depends(get_core),
) -> PlainTextResponse:
    """Download the agent's raw metric log lines from the last `minutes`."""

    window = clamp_minutes(minutes)
    path = resolve_log_path(core.settings.metrics_log_path)
    if path is None:
        raise NotFound("Log file not found. Set METRICS_LOG_PATH or place agent-metrics.log in the repo root.")

    lines = await run_in_threadpool(read_recent_log_lines, path, window)
    return PlainTextResponse(
        "\n".join(lines),
        headers={"Content-Disposition": f'attachment; filename="agent-metrics-last-{window}m.log"'},
    )
