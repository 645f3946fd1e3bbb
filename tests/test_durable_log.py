from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone

from api.app.schemas import MetricSample
from api.app.services import durable_log as durable_log_module
from api.app.services.durable_log import DurableLog, DurableLogWriter, safe_id


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _sample(i: int, device_id: str = "dev-1", **metrics) -> MetricSample:
    return MetricSample(
        timestamp=T0 + timedelta(seconds=i),
        device_id=device_id,
        metrics=metrics or {"cpuPercent": float(i)},
    )


def test_safe_id_sanitizes_and_bounds() -> None:
    assert safe_id("pc/../etc") == "pc_.._etc"
    assert safe_id("a b:c") == "a_b_c"
    assert safe_id("") == "unknown"
    assert len(safe_id("x" * 500)) == 120


def test_append_writes_one_line_per_sample_without_unset_fields(tmp_path) -> None:
    log = DurableLog(tmp_path)
    log.append(_sample(0, cpuPercent=12.5))

    lines = log.path_for("dev-1").read_text("utf-8").splitlines()
    assert len(lines) == 1
    obj = json.loads(lines[0])
    assert obj["deviceId"] == "dev-1"
    assert obj["metrics"] == {"cpuPercent": 12.5}


def test_read_recent_filters_by_cutoff_and_keeps_order(tmp_path) -> None:
    log = DurableLog(tmp_path)
    for i in range(10):
        log.append(_sample(i))

    out = log.read_recent("dev-1", T0 + timedelta(seconds=5))
    assert [s.metrics.cpu_percent for s in out] == [5.0, 6.0, 7.0, 8.0, 9.0]


def test_read_recent_limit_keeps_newest(tmp_path) -> None:
    log = DurableLog(tmp_path)
    for i in range(10):
        log.append(_sample(i))

    out = log.read_recent("dev-1", T0, limit=3)
    assert [s.metrics.cpu_percent for s in out] == [7.0, 8.0, 9.0]


def test_read_recent_skips_malformed_lines(tmp_path) -> None:
    log = DurableLog(tmp_path)
    log.append(_sample(0))
    with open(log.path_for("dev-1"), "a", encoding="utf-8") as fh:
        fh.write("{not json\n")
        fh.write('{"timestamp": "2026-03-01T12:00:01Z"}\n')
    log.append(_sample(2))

    out = log.read_recent("dev-1", T0)
    assert [s.metrics.cpu_percent for s in out] == [0.0, 2.0]


def test_read_recent_unknown_device_is_empty(tmp_path) -> None:
    assert DurableLog(tmp_path / "missing").read_recent("nope", T0) == []


def test_read_is_bounded_by_tail_bytes(tmp_path) -> None:
    log = DurableLog(tmp_path, tail_bytes=4096)
    for i in range(200):
        log.append(_sample(i))

    out = log.read_recent("dev-1", T0, limit=500)
    assert 0 < len(out) < 200
    assert out[-1].metrics.cpu_percent == 199.0
    cpus = [s.metrics.cpu_percent for s in out]
    assert cpus == sorted(cpus)


def test_read_recent_all_devices_merges_sorted(tmp_path) -> None:
    log = DurableLog(tmp_path)
    log.append(_sample(0, "a"))
    log.append(_sample(2, "a"))
    log.append(_sample(1, "b"))
    log.append(_sample(3, "b"))

    out = log.read_recent_all_devices(T0, limit=3)
    assert [(s.device_id, s.metrics.cpu_percent) for s in out] == [("b", 1.0), ("a", 2.0), ("b", 3.0)]
    assert log.list_device_ids() == ["a", "b"]


def test_rotation_keeps_reads_working_across_segments(tmp_path) -> None:
    log = DurableLog(tmp_path, max_file_bytes=200, keep_segments=2)
    for i in range(5):
        log.append(_sample(i))

    assert log.rotate_oversized() == ["dev-1"]
    assert not log.path_for("dev-1").exists()

    for i in range(5, 8):
        log.append(_sample(i))

    out = log.read_recent("dev-1", T0)
    assert [s.metrics.cpu_percent for s in out] == [float(i) for i in range(8)]


def test_rotation_drops_oldest_segment(tmp_path) -> None:
    log = DurableLog(tmp_path, keep_segments=1)
    log.append(_sample(0))
    log.rotate("dev-1", force=True)
    log.append(_sample(1))
    log.rotate("dev-1", force=True)
    log.append(_sample(2))

    out = log.read_recent("dev-1", T0)
    assert [s.metrics.cpu_percent for s in out] == [1.0, 2.0]


def test_rotation_is_noop_when_disabled_or_small(tmp_path) -> None:
    log = DurableLog(tmp_path, max_file_bytes=0)
    log.append(_sample(0))
    assert log.rotate_oversized() == []
    assert DurableLog(tmp_path, max_file_bytes=10_000).rotate_oversized() == []


def test_sync_writer_appends_inline(tmp_path) -> None:
    log = DurableLog(tmp_path)
    writer = DurableLogWriter(log, mode="sync")
    writer.submit(_sample(0))

    assert writer.written == 1
    assert len(log.read_recent("dev-1", T0)) == 1


def test_async_writer_drains_on_flush(tmp_path) -> None:
    log = DurableLog(tmp_path)
    writer = DurableLogWriter(log, mode="async")
    for i in range(20):
        writer.submit(_sample(i))

    assert writer.flush(timeout=5.0) is True
    assert writer.written == 20
    assert len(log.read_recent("dev-1", T0)) == 20
    writer.close()


def test_writer_failures_never_propagate(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    writer = DurableLogWriter(DurableLog(blocker), mode="sync")

    writer.submit(_sample(0))

    assert writer.failures == 1
    assert writer.written == 0


def test_closed_writer_counts_dropped_samples(tmp_path) -> None:
    writer = DurableLogWriter(DurableLog(tmp_path), mode="async")
    writer.submit(_sample(0))
    writer.close()

    writer.submit(_sample(1))
    assert writer.failures == 1


def test_rotation_job_reports_rotated_devices(tmp_path) -> None:
    from api.app.jobs.rotate_logs import run_rotation

    log = DurableLog(tmp_path, max_file_bytes=100)
    for i in range(5):
        log.append(_sample(i, device_id="big"))
    log.append(_sample(0, device_id="small"))

    assert run_rotation(log) == ["big"]
    assert run_rotation(log) == []


def test_window_ending_on_a_line_boundary_keeps_the_first_record(tmp_path) -> None:
    log = DurableLog(tmp_path)
    for i in range(3):
        log.append(_sample(i))
    size = log.path_for("dev-1").stat().st_size
    assert size % 3 == 0
    line_len = size // 3

    log.tail_bytes = 2 * line_len
    assert [s.metrics.cpu_percent for s in log.read_recent("dev-1", T0, 10)] == [1.0, 2.0]

    log.tail_bytes = 2 * line_len - 5
    assert [s.metrics.cpu_percent for s in log.read_recent("dev-1", T0, 10)] == [2.0]


def test_rotation_waits_for_an_in_flight_read(tmp_path, monkeypatch) -> None:
    log = DurableLog(tmp_path, keep_segments=2)
    for i in range(3):
        log.append(_sample(i))

    real_read_tail = durable_log_module._read_tail
    rotators: list[threading.Thread] = []

    def read_then_rotate(path, max_bytes):
        out = real_read_tail(path, max_bytes)
        if not rotators:
            t = threading.Thread(target=log.rotate, args=("dev-1",), kwargs={"force": True})
            t.start()
            t.join(timeout=0.2)
            rotators.append(t)
        return out

    monkeypatch.setattr(durable_log_module, "_read_tail", read_then_rotate)

    out = log.read_recent("dev-1", T0)
    rotators[0].join(timeout=5)

    assert [s.metrics.cpu_percent for s in out] == [0.0, 1.0, 2.0]
    assert not log.path_for("dev-1").exists()
