from __future__ import annotations

import json

import pytest

from api.app.errors import BadPayload
from api.app.services.agent_config import AgentConfigStore


def test_missing_or_corrupt_file_reads_as_empty(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "agent.config.json")
    assert store.read() == {}

    store.path.write_text("{broken", encoding="utf-8")
    assert store.read() == {}

    store.path.write_text("[1, 2]", encoding="utf-8")
    assert store.read() == {}


def test_apply_credentials_merges_and_defaults_base_url(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "dist" / "agent.config.json")
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"networkTargets": ["1.1.1.1"]}), encoding="utf-8")

    config = store.apply_credentials(device_id="dev-1", agent_token="tok")

    assert config == {
        "networkTargets": ["1.1.1.1"],
        "deviceId": "dev-1",
        "agentToken": "tok",
        "baseUrl": "http://localhost:3000",
    }
    assert json.loads(store.path.read_text("utf-8")) == config


def test_apply_credentials_keeps_existing_base_url(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "agent.config.json")
    store.apply_credentials(device_id="d", agent_token="t", base_url="http://pulse:8080")

    config = store.apply_credentials(device_id="d2", agent_token="t2")
    assert config["baseUrl"] == "http://pulse:8080"


def test_apply_credentials_requires_both_fields(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "agent.config.json")
    with pytest.raises(BadPayload):
        store.apply_credentials(device_id="d", agent_token=" ")
    assert not store.path.exists()


def test_apply_network_clamps_and_trims(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "agent.config.json")

    config = store.apply_network(
        probe_interval_s=9999,
        targets=[" 8.8.8.8 ", "", 42, *[f"10.0.0.{i}" for i in range(20)]],
        dns_test_host="  " + "h" * 300,
        enable_public_ip=False,
    )

    assert config["networkProbeIntervalSeconds"] == 300
    assert config["networkTargets"][0] == "8.8.8.8"
    assert len(config["networkTargets"]) == 12
    assert config["networkDnsTestHost"] == "h" * 200
    assert config["enablePublicIp"] is False


def test_apply_network_leaves_unspecified_keys(tmp_path) -> None:
    store = AgentConfigStore(tmp_path / "agent.config.json")
    store.apply_network(probe_interval_s=1, targets=["a"])

    config = store.apply_network(enable_public_ip=True)
    assert config == {"networkProbeIntervalSeconds": 2, "networkTargets": ["a"], "enablePublicIp": True}
