from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from ..errors import BadPayload


logger = logging.getLogger("pulseboard.agent_config")

DEFAULT_BASE_URL = "http://localhost:3000"

MIN_PROBE_INTERVAL_S = 2
MAX_PROBE_INTERVAL_S = 300
MAX_NETWORK_TARGETS = 12
MAX_DNS_HOST_CHARS = 200


class AgentConfigStore:
    """Key-value JSON file read by the local agent.

    Each write merges into whatever the file already holds. A missing or
    unreadable file counts as empty. Writes go to a temp file first and are
    moved into place, so the agent never reads a half-written config.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text("utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("agent_config_unreadable", extra={"fields": {"path": str(self.path)}})
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, config: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(config, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            config = self.read()
            config.update(changes)
            self._write(config)
        logger.info(
            "agent_config_written",
            extra={"fields": {"path": str(self.path), "keys": sorted(changes)}},
        )
        return config

    def apply_credentials(
        self, *, device_id: str, agent_token: str, base_url: Optional[str] = None
    ) -> dict[str, Any]:
        device_id = (device_id or "").strip()
        agent_token = (agent_token or "").strip()
        if not device_id or not agent_token:
            raise BadPayload("deviceId and agentToken are required")

        with self._lock:
            config = self.read()
            config["deviceId"] = device_id
            config["agentToken"] = agent_token
            config["baseUrl"] = (base_url or "").strip() or config.get("baseUrl") or DEFAULT_BASE_URL
            self._write(config)

        logger.info("agent_credentials_applied", extra={"fields": {"device_id": device_id}})
        return config

    def apply_network(
        self,
        *,
        probe_interval_s: Optional[float] = None,
        targets: Optional[Iterable[Any]] = None,
        dns_test_host: Optional[str] = None,
        enable_public_ip: Optional[bool] = None,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if probe_interval_s is not None:
            changes["networkProbeIntervalSeconds"] = max(
                MIN_PROBE_INTERVAL_S, min(probe_interval_s, MAX_PROBE_INTERVAL_S)
            )
        if targets is not None:
            cleaned = [t.strip() for t in targets if isinstance(t, str) and t.strip()]
            changes["networkTargets"] = cleaned[:MAX_NETWORK_TARGETS]
        if dns_test_host is not None:
            changes["networkDnsTestHost"] = dns_test_host.strip()[:MAX_DNS_HOST_CHARS]
        if enable_public_ip is not None:
            changes["enablePublicIp"] = bool(enable_public_ip)
        return self.update(changes)
