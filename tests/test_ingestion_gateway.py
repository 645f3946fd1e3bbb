from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from api.app.errors import BadPayload, RateLimited, Unauthenticated
from api.app.rate_limit import TokenBucketLimiter
from api.app.schemas import MetricSample
from api.app.services.device_registry import DeviceRegistry
from api.app.services.durable_log import DurableLog, DurableLogWriter
from api.app.services.ingestion_gateway import IngestionGateway
from api.app.services.pubsub import PubSub
from api.app.services.sample_buffer import SampleBuffer


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _gateway(tmp_path, *, limiter: TokenBucketLimiter | None = None) -> IngestionGateway:
    return IngestionGateway(
        registry=DeviceRegistry(),
        buffer=SampleBuffer(500),
        log_writer=DurableLogWriter(DurableLog(tmp_path), mode="sync"),
        pubsub=PubSub(),
        limiter=limiter,
        clock=lambda: NOW,
    )


def _body(**metrics) -> dict:
    return {"hostname": "office-pc", "agentVersion": "1.2.3", "metrics": metrics or {"cpuPercent": 10}}


def test_first_heartbeat_provisions_device_and_fans_out(tmp_path) -> None:
    gw = _gateway(tmp_path)
    published: list[MetricSample] = []
    gw.pubsub.subscribe(published.append)

    sample = gw.ingest("dev-1", "tok-1", _body())

    assert sample.device_id == "dev-1"
    assert sample.timestamp == NOW
    assert gw.registry.verify("dev-1", "tok-1")
    device = gw.registry.get("dev-1")
    assert device is not None
    assert device.name == "office-pc"
    assert device.last_seen_at == NOW
    assert gw.buffer.recent() == [sample]
    assert gw.log_writer.log.read_recent("dev-1", NOW - timedelta(minutes=1)) == [sample]
    assert published == [sample]


def test_known_device_with_wrong_token_is_rejected_without_side_effects(tmp_path) -> None:
    gw = _gateway(tmp_path)
    gw.ingest("dev-1", "tok-1", _body())

    with pytest.raises(Unauthenticated):
        gw.ingest("dev-1", "wrong", _body())

    assert len(gw.buffer) == 1


@pytest.mark.parametrize(("device_id", "token"), [("", "tok"), ("dev", ""), (None, None)])
def test_missing_credentials_are_rejected(tmp_path, device_id, token) -> None:
    gw = _gateway(tmp_path)
    with pytest.raises(Unauthenticated):
        gw.ingest(device_id, token, _body())
    assert len(gw.registry) == 0


def test_body_credentials_are_used_when_headers_absent(tmp_path) -> None:
    gw = _gateway(tmp_path)
    body = {"deviceId": "dev-b", "agentToken": "tok-b", "cpuPercent": 3}

    sample = gw.ingest(None, None, body)

    assert sample.device_id == "dev-b"
    assert sample.metrics.cpu_percent == 3.0


def test_header_credentials_win_over_body(tmp_path) -> None:
    gw = _gateway(tmp_path)
    body = {"deviceId": "dev-b", "agentToken": "tok-b", "cpuPercent": 3}

    sample = gw.ingest("dev-h", "tok-h", body)

    assert sample.device_id == "dev-h"
    assert gw.registry.get("dev-b") is None


def test_bad_payload_from_unknown_device_does_not_provision(tmp_path) -> None:
    gw = _gateway(tmp_path)

    with pytest.raises(BadPayload):
        gw.ingest("dev-1", "tok", {"metrics": {"cpuPercent": "lots"}})

    assert len(gw.registry) == 0
    assert len(gw.buffer) == 0


def test_rate_limit_rejects_before_mutation(tmp_path) -> None:
    gw = _gateway(tmp_path, limiter=TokenBucketLimiter(capacity=2, refill_per_second=0.001))
    gw.ingest("dev-1", "tok", _body())
    gw.ingest("dev-1", "tok", _body())

    with pytest.raises(RateLimited) as err:
        gw.ingest("dev-1", "tok", _body())

    assert err.value.retry_after_s >= 1
    assert len(gw.buffer) == 2


def test_durable_log_failure_does_not_fail_ingest(tmp_path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    gw = _gateway(tmp_path)
    gw.log_writer = DurableLogWriter(DurableLog(blocker), mode="sync")

    sample = gw.ingest("dev-1", "tok", _body())

    assert gw.buffer.latest() == sample
    assert gw.log_writer.failures == 1


def test_authenticate_provisions_and_verifies(tmp_path) -> None:
    gw = _gateway(tmp_path)

    device = gw.authenticate("dev-1", "tok")
    assert device.id == "dev-1"
    assert gw.authenticate("dev-1", "tok").id == "dev-1"

    with pytest.raises(Unauthenticated):
        gw.authenticate("dev-1", "other")
    with pytest.raises(Unauthenticated):
        gw.authenticate("", "tok")


def test_device_provisioned_concurrently_with_other_token_is_rejected(tmp_path) -> None:
    gw = _gateway(tmp_path)

    def clock_that_lets_another_agent_in() -> datetime:
        # Another first heartbeat for the same id lands while this one is
        # still being normalized.
        gw.registry.ensure_device("dev-1", "tok-A", "host")
        return NOW

    gw.clock = clock_that_lets_another_agent_in

    with pytest.raises(Unauthenticated):
        gw.ingest("dev-1", "tok-B", _body())

    assert gw.registry.verify("dev-1", "tok-A")
    assert not gw.registry.verify("dev-1", "tok-B")
    assert len(gw.buffer) == 0
    assert gw.log_writer.log.read_recent("dev-1", NOW - timedelta(minutes=1)) == []
