from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends

from ..core import TelemetryCore, get_core
from ..schemas import DeviceEnrollRequest, DeviceEnrollResponse, DeviceOut, DevicesOut


router = APIRouter(prefix="/api", tags=["devices"])

DEFAULT_DEVICE_NAME = "New Device"


@router.post("/devices", response_model=DeviceEnrollResponse)
def enroll_device(
    req: Optional[DeviceEnrollRequest] = Body(default=None),
    core: TelemetryCore = Depends(get_core),
) -> DeviceEnrollResponse:
    """Mint a device id and token. The plaintext token is only returned here."""

    name = ((req.name if req else None) or "").strip() or DEFAULT_DEVICE_NAME
    result = core.registry.enroll(name)
    return DeviceEnrollResponse(id=result.id, token=result.token)


@router.get("/devices", response_model=DevicesOut)
def list_devices(core: TelemetryCore = Depends(get_core)) -> DevicesOut:
    return DevicesOut(
        devices=[
            DeviceOut(
                id=d.id,
                name=d.name,
                status=d.status,
                hostname=d.hostname,
                last_seen_at=d.last_seen_at,
                seconds_since_seen=d.seconds_since_seen,
            )
            for d in core.registry.list_devices()
        ]
    )
