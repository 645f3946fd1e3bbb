from __future__ import annotations

import argparse
import logging
import math
import os
import random
import socket
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import requests
from dotenv import load_dotenv

from ..config import settings
from ..observability import configure_logging
from ..security import AGENT_TOKEN_HEADER, DEVICE_ID_HEADER


logger = logging.getLogger("pulseboard.job.simulate_telemetry")

SIMULATOR_VERSION = "sim-1"
PING_TARGETS = ("1.1.1.1", "8.8.8.8")


def _jitter(val: float, amount: float) -> float:
    return float(val + random.uniform(-amount, amount)) if amount > 0 else float(val)


def build_heartbeat_payload(*, device_index: int, ts: datetime, hostname: str) -> dict[str, Any]:
    """A plausible desktop heartbeat: slow CPU/memory waves and a noisy network."""

    phase = ts.timestamp() / 60.0 + device_index * 7.0

    cpu = max(0.0, min(100.0, _jitter(35.0 + 25.0 * math.sin(phase / 3.0), 4.0)))
    mem_total = 32.0
    mem_used = max(1.0, min(mem_total, _jitter(14.0 + 4.0 * math.sin(phase / 9.0), 0.3)))
    disk_total = 953.0
    disk_used = 512.0 + (phase % 600) * 0.01

    pings = []
    for i, target in enumerate(PING_TARGETS):
        avg = max(1.0, _jitter(12.0 + i * 6.0 + 3.0 * math.sin(phase / 2.0), 1.5))
        pings.append(
            {
                "target": target,
                "lastMs": round(_jitter(avg, 1.0), 2),
                "avgMs": round(avg, 2),
                "lossPct": 0.0 if random.random() > 0.05 else 10.0,
                "window": 10,
            }
        )

    return {
        "hostname": hostname,
        "agentVersion": SIMULATOR_VERSION,
        "metrics": {
            "timestamp": ts.isoformat(),
            "cpuPercent": round(cpu, 2),
            "memUsedGB": round(mem_used, 2),
            "memTotalGB": mem_total,
            "diskUsedGB": round(disk_used, 2),
            "diskFreeGB": round(disk_total - disk_used, 2),
            "diskTotalGB": disk_total,
            "diskLabel": "C:",
            "processCount": 180 + device_index * 11,
            "uptimeSec": int(phase * 60) % 864_000,
            "cpuTempC": round(_jitter(48.0 + cpu * 0.3, 0.5), 1),
            "gpuTempC": round(_jitter(41.0 + 6.0 * math.sin(phase / 5.0), 0.5), 1),
            "tempSource": "simulator",
            "net": {
                "totals": {
                    "rxBps": round(max(0.0, _jitter(250_000.0, 80_000.0)), 1),
                    "txBps": round(max(0.0, _jitter(60_000.0, 20_000.0)), 1),
                },
                "probe": {
                    "at": ts.isoformat(),
                    "intervalSec": 10,
                    "ping": pings,
                    "dns": {"host": "example.com", "ok": True, "ms": round(max(1.0, _jitter(18.0, 6.0)), 2)},
                },
            },
        },
    }


def send_heartbeat(
    session: requests.Session,
    *,
    api_url: str,
    device_id: str,
    token: str,
    payload: dict[str, Any],
    timeout_s: float = 10.0,
) -> requests.Response:
    return session.post(
        f"{api_url.rstrip('/')}/api/agent/heartbeat",
        json=payload,
        headers={DEVICE_ID_HEADER: device_id, AGENT_TOKEN_HEADER: token},
        timeout=timeout_s,
    )


def main() -> None:
    load_dotenv()
    load_dotenv(Path.cwd() / ".env.simulator")

    parser = argparse.ArgumentParser(description="Pulseboard heartbeat simulator")
    parser.add_argument("--count", type=int, default=0, help="Stop after N heartbeats (0 = run forever)")
    parser.add_argument("--interval-s", type=float, default=5.0, help="Seconds between heartbeats")
    parser.add_argument("--devices", type=int, default=1, help="Number of simulated devices")
    args = parser.parse_args()

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    if settings.app_env == "prod":
        logger.warning("simulation_disabled_in_prod")
        return

    api_url = os.getenv("PULSEBOARD_API_URL", "http://localhost:8080")
    base_id = os.getenv("PULSEBOARD_DEVICE_ID", settings.demo_device_id)
    token = os.getenv("PULSEBOARD_DEVICE_TOKEN", settings.demo_device_token)
    hostname = socket.gethostname()
    device_count = max(1, min(args.devices, 50))

    session = requests.Session()
    sent = 0
    logger.info(
        "simulator_started",
        extra={"fields": {"api_url": api_url, "devices": device_count, "interval_s": args.interval_s}},
    )

    while args.count <= 0 or sent < args.count:
        now = datetime.now(timezone.utc)
        for idx in range(1, device_count + 1):
            device_id = base_id if device_count == 1 else f"{base_id}-{idx}"
            payload = build_heartbeat_payload(device_index=idx, ts=now, hostname=f"{hostname}-{idx}")
            try:
                resp = send_heartbeat(session, api_url=api_url, device_id=device_id, token=token, payload=payload)
            except requests.RequestException as exc:
                logger.warning("heartbeat_send_failed", extra={"fields": {"device_id": device_id, "error": repr(exc)}})
                continue
            if not 200 <= resp.status_code < 300:
                logger.warning(
                    "heartbeat_rejected",
                    extra={"fields": {"device_id": device_id, "status": resp.status_code, "body": resp.text[:200]}},
                )
        sent += 1
        if args.count <= 0 or sent < args.count:
            time.sleep(max(0.5, args.interval_s))

    logger.info("simulator_finished", extra={"fields": {"rounds": sent}})


if __name__ == "__main__":
    main()
