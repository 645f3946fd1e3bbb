from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python.

    Samples are serialized with `exclude_unset=True` so a field the agent never
    reported stays absent instead of turning into null or zero.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# -----------------------------------------------------------------------------
# Telemetry sample
# -----------------------------------------------------------------------------


class DiskOut(WireModel):
    id: str
    label: Optional[str] = None
    file_system: Optional[str] = None
    is_ready: Optional[bool] = None
    size_gb: Optional[float] = Field(None, alias="sizeGB")
    free_gb: Optional[float] = Field(None, alias="freeGB")
    used_gb: Optional[float] = Field(None, alias="usedGB")
    percent: Optional[float] = None


class TempReading(WireModel):
    name: str
    value: float


class NetTotals(WireModel):
    rx_bps: Optional[float] = None
    tx_bps: Optional[float] = None


class NetInterface(WireModel):
    name: str
    if_index: Optional[int] = None
    description: Optional[str] = None
    mac: Optional[str] = None
    link_speed_mbps: Optional[float] = None
    ipv4: List[str] = Field(default_factory=list)
    ipv6: List[str] = Field(default_factory=list)
    rx_bytes: Optional[float] = None
    tx_bytes: Optional[float] = None
    rx_bps: Optional[float] = None
    tx_bps: Optional[float] = None
    rx_errors: Optional[float] = None
    tx_errors: Optional[float] = None
    rx_discards: Optional[float] = None
    tx_discards: Optional[float] = None


class PingStat(WireModel):
    target: str
    last_ms: Optional[float] = None
    avg_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    loss_pct: Optional[float] = None
    window: Optional[int] = None


class DnsProbe(WireModel):
    host: Optional[str] = None
    ok: Optional[bool] = None
    ms: Optional[float] = None


class HttpProbe(WireModel):
    url: Optional[str] = None
    ok: Optional[bool] = None
    status: Optional[int] = None
    ms: Optional[float] = None


class NetProbe(WireModel):
    at: Optional[str] = None
    interval_sec: Optional[float] = None
    ping: List[PingStat] = Field(default_factory=list)
    dns: Optional[DnsProbe] = None
    http: Optional[HttpProbe] = None
    public_ip: Optional[str] = None


class NetSnapshot(WireModel):
    default_if_index: Optional[int] = None
    gateway: Optional[str] = None
    dns_servers: List[str] = Field(default_factory=list)
    totals: Optional[NetTotals] = None
    interfaces: List[NetInterface] = Field(default_factory=list)
    probe: Optional[NetProbe] = None


class SampleMetrics(WireModel):
    cpu_percent: Optional[float] = None
    mem_used_gb: Optional[float] = Field(None, alias="memUsedGB")
    mem_total_gb: Optional[float] = Field(None, alias="memTotalGB")
    disk_used_gb: Optional[float] = Field(None, alias="diskUsedGB")
    disk_free_gb: Optional[float] = Field(None, alias="diskFreeGB")
    disk_total_gb: Optional[float] = Field(None, alias="diskTotalGB")
    disk_label: Optional[str] = None
    disks: Optional[List[DiskOut]] = None
    process_count: Optional[int] = None
    uptime_sec: Optional[float] = None
    cpu_temp_c: Optional[float] = None
    gpu_temp_c: Optional[float] = None
    gpu_memory_temp_c: Optional[float] = None
    board_temp_c: Optional[float] = None
    cpu_temp_max_c: Optional[float] = None
    gpu_hotspot_temp_c: Optional[float] = None
    temps: Optional[List[TempReading]] = None
    temp_source: Optional[str] = None
    temp_reason: Optional[str] = None
    net: Optional[NetSnapshot] = None


class MetricSample(WireModel):
    timestamp: datetime
    device_id: str
    agent_version: str = "unknown"
    hostname: str = "unknown"
    metrics: SampleMetrics = Field(default_factory=SampleMetrics)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_unset=True)


# -----------------------------------------------------------------------------
# Devices
# -----------------------------------------------------------------------------


class DeviceEnrollRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=256)


class DeviceEnrollResponse(BaseModel):
    id: str
    token: str


class DeviceOut(WireModel):
    id: str
    name: str
    status: str
    hostname: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    seconds_since_seen: Optional[int] = None


class DevicesOut(BaseModel):
    devices: List[DeviceOut]


# -----------------------------------------------------------------------------
# Agent endpoints
# -----------------------------------------------------------------------------


class HeartbeatResponse(BaseModel):
    ok: bool = True


class JobFinishRequest(BaseModel):
    status: Optional[str] = None
    output: Any = None


class JobFinishResponse(WireModel):
    ok: bool = True
    job_id: str
    device_id: str


class JobLogRequest(BaseModel):
    lines: Optional[List[Any]] = None


class JobLogResponse(WireModel):
    ok: bool = True
    job_id: str
    device_id: str
    lines_received: int


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


class PingMeanOut(WireModel):
    avg_ms: Optional[float] = None
    loss_pct: Optional[float] = None


class HistoryPointOut(BaseModel):
    t: int
    cpu: Optional[float] = None
    mem: Optional[float] = None
    memUsedGB: Optional[float] = None
    memTotalGB: Optional[float] = None
    disk: Optional[float] = None
    cpuTemp: Optional[float] = None
    gpuTemp: Optional[float] = None
    rxBps: Optional[float] = None
    txBps: Optional[float] = None
    dnsMs: Optional[float] = None
    ping: Optional[Dict[str, PingMeanOut]] = None


class HistoryOut(BaseModel):
    minutes: int
    bucketMs: int
    points: List[HistoryPointOut]


# -----------------------------------------------------------------------------
# Agent config store
# -----------------------------------------------------------------------------


class AgentCredentialsApply(WireModel):
    device_id: str = ""
    agent_token: str = ""
    base_url: Optional[str] = None


class AgentNetworkApply(WireModel):
    network_probe_interval_seconds: Optional[float] = None
    network_targets: Optional[List[Any]] = None
    network_dns_test_host: Optional[str] = None
    enable_public_ip: Optional[bool] = None


class AgentConfigOut(BaseModel):
    ok: bool = True
    path: str
    config: Dict[str, Any]
