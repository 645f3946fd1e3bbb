from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Header, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ..core import get_gateway
from ..errors import BadPayload
from ..models import Device
from ..schemas import (
    HeartbeatResponse,
    JobFinishRequest,
    JobFinishResponse,
    JobLogRequest,
    JobLogResponse,
)
from ..services.ingestion_gateway import IngestionGateway


router = APIRouter(prefix="/api/agent", tags=["agent"])


def require_agent(
    gateway: IngestionGateway = Depends(get_gateway),
    x_device_id: str | None = Header(default=None, alias="x-device-id"),
    x_agent_token: str | None = Header(default=None, alias="x-agent-token"),
) -> Device:
    """Authenticate a job-endpoint call from headers, provisioning unknown devices."""
    return gateway.authenticate(x_device_id, x_agent_token)


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    request: Request,
    gateway: IngestionGateway = Depends(get_gateway),
    x_device_id: str | None = Header(default=None, alias="x-device-id"),
    x_agent_token: str | None = Header(default=None, alias="x-agent-token"),
) -> HeartbeatResponse:
    """Accept one telemetry sample from an agent.

    The body is either `{"metrics": {...}}` or the metric fields inline.
    Credentials come from the `x-device-id` / `x-agent-token` headers, or
    from `deviceId` / `agentToken` in the body when the headers are absent.
    """

    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BadPayload("request body is not valid JSON") from exc

    # Ingest does blocking work (locks, sync-mode file appends).
    await run_in_threadpool(gateway.ingest, x_device_id, x_agent_token, body)
    return HeartbeatResponse()


@router.get("/jobs/next", status_code=status.HTTP_204_NO_CONTENT)
def next_job(device: Device = Depends(require_agent)) -> Response:
    # No job queue yet; 204 keeps polling agents quiet.
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/jobs/{job_id}/finish", response_model=JobFinishResponse)
def finish_job(job_id: str, req: JobFinishRequest, device: Device = Depends(require_agent)) -> JobFinishResponse:
    if not req.status:
        raise BadPayload("status is required")
    return JobFinishResponse(job_id=job_id, device_id=device.id)


@router.post("/jobs/{job_id}/log", response_model=JobLogResponse)
def job_log(job_id: str, req: JobLogRequest, device: Device = Depends(require_agent)) -> JobLogResponse:
    if req.lines is None:
        raise BadPayload("lines array is required")
    return JobLogResponse(job_id=job_id, device_id=device.id, lines_received=len(req.lines))
