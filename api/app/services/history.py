"""Fixed-width time bucketing over durable-log samples.

Each bucket keeps running sums and counts per dimension and emits a mean only
for dimensions that saw at least one value. Percentages are derived per
sample before averaging and are skipped when the divisor is not positive.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from ..schemas import MetricSample
from .durable_log import DurableLog
from .ingest_pipeline import normalize_utc


DEFAULT_MINUTES = 60
MIN_MINUTES = 5
MAX_MINUTES = 7 * 24 * 60
MAX_HISTORY_SAMPLES = 5000


def clamp_minutes(raw: Any) -> int:
    if isinstance(raw, bool):
        return DEFAULT_MINUTES
    if isinstance(raw, str):
        try:
            raw = int(raw.strip(), 10)
        except ValueError:
            return DEFAULT_MINUTES
    if not isinstance(raw, int):
        return DEFAULT_MINUTES
    return max(MIN_MINUTES, min(raw, MAX_MINUTES))


def bucket_ms_for_minutes(minutes: int) -> int:
    if minutes <= 60:
        return 10_000
    if minutes <= 6 * 60:
        return 60_000
    return 5 * 60_000


def _num(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


@dataclass
class _Mean:
    total: float = 0.0
    count: int = 0

    def add(self, value: float | None) -> None:
        if value is None:
            return
        self.total += value
        self.count += 1

    def value(self) -> float | None:
        return self.total / self.count if self.count else None


@dataclass
class _PingAcc:
    avg_ms: _Mean = field(default_factory=_Mean)
    loss_pct: _Mean = field(default_factory=_Mean)


@dataclass
class _Bucket:
    cpu: _Mean = field(default_factory=_Mean)
    mem: _Mean = field(default_factory=_Mean)
    mem_used: _Mean = field(default_factory=_Mean)
    mem_total: float | None = None
    disk: _Mean = field(default_factory=_Mean)
    rx: _Mean = field(default_factory=_Mean)
    tx: _Mean = field(default_factory=_Mean)
    dns: _Mean = field(default_factory=_Mean)
    cpu_temp: float | None = None
    gpu_temp: float | None = None
    ping: dict[str, _PingAcc] = field(default_factory=dict)

    def add(self, sample: MetricSample) -> None:
        m = sample.metrics

        self.cpu.add(_num(m.cpu_percent))

        used, total = _num(m.mem_used_gb), _num(m.mem_total_gb)
        if used is not None and total is not None and total > 0:
            self.mem_used.add(used)
            self.mem.add(used / total * 100.0)
            self.mem_total = total if self.mem_total is None else max(self.mem_total, total)

        disk_used, disk_total = _num(m.disk_used_gb), _num(m.disk_total_gb)
        if disk_used is not None and disk_total is not None and disk_total > 0:
            self.disk.add(disk_used / disk_total * 100.0)

        # Temperatures are not averaged; the latest reading in the bucket wins.
        cpu_temp = _num(m.cpu_temp_c)
        if cpu_temp is not None:
            self.cpu_temp = cpu_temp
        gpu_temp = _num(m.gpu_temp_c)
        if gpu_temp is not None:
            self.gpu_temp = gpu_temp

        net = m.net
        if net is None:
            return
        if net.totals is not None:
            self.rx.add(_num(net.totals.rx_bps))
            self.tx.add(_num(net.totals.tx_bps))
        probe = net.probe
        if probe is None:
            return
        if probe.dns is not None:
            self.dns.add(_num(probe.dns.ms))
        for stat in probe.ping:
            if not stat.target:
                continue
            acc = self.ping.setdefault(stat.target, _PingAcc())
            acc.avg_ms.add(_num(stat.avg_ms))
            acc.loss_pct.add(_num(stat.loss_pct))

    def to_point(self, t: int) -> dict[str, Any]:
        point: dict[str, Any] = {"t": t}
        values = {
            "cpu": self.cpu.value(),
            "mem": self.mem.value(),
            "memUsedGB": self.mem_used.value(),
            "memTotalGB": self.mem_total,
            "disk": self.disk.value(),
            "cpuTemp": self.cpu_temp,
            "gpuTemp": self.gpu_temp,
            "rxBps": self.rx.value(),
            "txBps": self.tx.value(),
            "dnsMs": self.dns.value(),
        }
        point.update({k: v for k, v in values.items() if v is not None})

        if self.ping:
            ping: dict[str, dict[str, float]] = {}
            for target, acc in self.ping.items():
                stats: dict[str, float] = {}
                avg_ms = acc.avg_ms.value()
                if avg_ms is not None:
                    stats["avgMs"] = avg_ms
                loss_pct = acc.loss_pct.value()
                if loss_pct is not None:
                    stats["lossPct"] = loss_pct
                ping[target] = stats
            point["ping"] = ping
        return point


def _timestamp_ms(sample: MetricSample) -> int | None:
    try:
        return int(normalize_utc(sample.timestamp).timestamp() * 1000)
    except (OverflowError, OSError, ValueError):
        return None


def aggregate_samples(samples: Iterable[MetricSample], bucket_ms: int) -> list[dict[str, Any]]:
    """Bucket samples by `floor(ts_ms / bucket_ms) * bucket_ms`, ascending."""

    if bucket_ms <= 0:
        raise ValueError("bucket_ms must be positive")

    buckets: dict[int, _Bucket] = {}
    for sample in samples:
        ts_ms = _timestamp_ms(sample)
        if ts_ms is None:
            continue
        key = (ts_ms // bucket_ms) * bucket_ms
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = _Bucket()
        bucket.add(sample)

    return [buckets[key].to_point(key) for key in sorted(buckets)]


@dataclass(frozen=True)
class HistoryResult:
    minutes: int
    bucket_ms: int
    points: list[dict[str, Any]]

    def to_wire(self) -> dict[str, Any]:
        return {"minutes": self.minutes, "bucketMs": self.bucket_ms, "points": self.points}


class HistoryAggregator:
    def __init__(self, log: DurableLog, *, max_samples: int = MAX_HISTORY_SAMPLES) -> None:
        self.log = log
        self.max_samples = max_samples

    def history(self, device_id: str, minutes: Any, now: datetime | None = None) -> HistoryResult:
        window = clamp_minutes(minutes)
        bucket_ms = bucket_ms_for_minutes(window)
        now = normalize_utc(now or datetime.now(timezone.utc))
        cutoff = now - timedelta(minutes=window)

        samples = self.log.read_recent(device_id, cutoff, self.max_samples)
        return HistoryResult(minutes=window, bucket_ms=bucket_ms, points=aggregate_samples(samples, bucket_ms))
