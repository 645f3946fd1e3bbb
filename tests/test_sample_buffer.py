from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from api.app.schemas import MetricSample
from api.app.services.sample_buffer import MAX_SAMPLES, SampleBuffer


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _sample(i: int, device_id: str = "dev-1") -> MetricSample:
    return MetricSample(timestamp=T0 + timedelta(seconds=i), device_id=device_id, metrics={"cpuPercent": float(i)})


def test_default_capacity_is_500() -> None:
    assert SampleBuffer().capacity == MAX_SAMPLES == 500


def test_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        SampleBuffer(0)


def test_evicts_oldest_first() -> None:
    buf = SampleBuffer(500)
    for i in range(501):
        buf.append(_sample(i))

    items = buf.recent()
    assert len(buf) == 500
    assert items[0].metrics.cpu_percent == 1.0
    assert items[-1].metrics.cpu_percent == 500.0


def test_recent_limit_returns_tail_in_insertion_order() -> None:
    buf = SampleBuffer(10)
    for i in range(5):
        buf.append(_sample(i))

    assert [s.metrics.cpu_percent for s in buf.recent(2)] == [3.0, 4.0]
    assert len(buf.recent(0)) == 5
    assert len(buf.recent(None)) == 5


def test_latest() -> None:
    buf = SampleBuffer(3)
    assert buf.latest() is None
    buf.append(_sample(1))
    buf.append(_sample(2))
    assert buf.latest().metrics.cpu_percent == 2.0  # type: ignore[union-attr]


def test_concurrent_appends_keep_bound() -> None:
    buf = SampleBuffer(100)

    def worker(offset: int) -> None:
        for i in range(200):
            buf.append(_sample(offset + i))

    threads = [threading.Thread(target=worker, args=(n * 1000,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(buf) == 100
