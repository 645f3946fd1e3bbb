from __future__ import annotations

from fastapi import APIRouter, Depends

from ..core import TelemetryCore, get_core
from ..errors import Forbidden
from ..schemas import AgentConfigOut, AgentCredentialsApply, AgentNetworkApply


router = APIRouter(prefix="/api", tags=["agent-config"])


def require_apply_enabled(core: TelemetryCore = Depends(get_core)) -> TelemetryCore:
    if not core.settings.agent_apply_enabled:
        raise Forbidden("agent apply is disabled; set AGENT_APPLY_ENABLED=true to allow writes")
    return core


@router.post("/devices/apply", response_model=AgentConfigOut)
def apply_credentials(
    req: AgentCredentialsApply,
    core: TelemetryCore = Depends(require_apply_enabled),
) -> AgentConfigOut:
    """Write a device's credentials into the local agent config file."""

    store = core.agent_config
    config = store.apply_credentials(
        device_id=req.device_id,
        agent_token=req.agent_token,
        base_url=req.base_url,
    )
    return AgentConfigOut(path=str(store.path), config=config)


@router.post("/agent/config/network", response_model=AgentConfigOut)
def apply_network(
    req: AgentNetworkApply,
    core: TelemetryCore = Depends(require_apply_enabled),
) -> AgentConfigOut:
    store = core.agent_config
    config = store.apply_network(
        probe_interval_s=req.network_probe_interval_seconds,
        targets=req.network_targets,
        dns_test_host=req.network_dns_test_host,
        enable_public_ip=req.enable_public_ip,
    )
    return AgentConfigOut(path=str(store.path), config=config)
