from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..core import TelemetryCore, get_core


router = APIRouter(prefix="/api/debug", tags=["debug"])


@router.get("/samples")
def buffer_summary(core: TelemetryCore = Depends(get_core)) -> dict[str, Any]:
    last = core.buffer.latest()
    return {"count": len(core.buffer), "last": last.to_wire() if last is not None else None}
