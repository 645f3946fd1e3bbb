from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..core import TelemetryCore, get_core


router = APIRouter(prefix="/api", tags=["events"])


@router.get("/events")
async def events(core: TelemetryCore = Depends(get_core)) -> StreamingResponse:
    """Server-sent events: `ready` once, then one `metric` event per new sample."""

    return StreamingResponse(
        core.events.frames(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
