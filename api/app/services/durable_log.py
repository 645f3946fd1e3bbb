"""Per-device append-only sample log.

Layout
- One newline-delimited JSON file per device: `<root>/<safe_id>.jsonl`.
- Rotation renames an oversized file to `<safe_id>.jsonl.1`, shifting older
  segments up to `keep_segments`. Segments are never edited in place.

Reads walk segments newest first and stop after `tail_bytes` in total, so a
history query costs at most one bounded read regardless of file size.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Literal

from ..errors import PersistenceFailure
from ..observability import record_durable_log_failure_metric
from ..schemas import MetricSample
from .ingest_pipeline import normalize_utc, parse_log_line, sample_ts


logger = logging.getLogger("pulseboard.durable_log")

LOG_SUFFIX = ".jsonl"
DEFAULT_TAIL_BYTES = 1024 * 1024
_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def safe_id(device_id: str) -> str:
    return _UNSAFE_ID_CHARS.sub("_", device_id or "unknown")[:120]


def _read_tail(path: Path, max_bytes: int) -> tuple[bytes, bool, bool]:
    """Read up to `max_bytes` from the end of `path`.

    Returns (data, cut, partial_first_line). `cut` means the window did not
    reach the start of the file; the first line is partial only when the cut
    landed inside a record rather than right after a newline.
    """
    with open(path, "rb") as fh:
        size = fh.seek(0, os.SEEK_END)
        start = max(0, size - max_bytes)
        partial = False
        if start > 0:
            fh.seek(start - 1)
            partial = fh.read(1) != b"\n"
        else:
            fh.seek(0)
        return fh.read(size - start), start > 0, partial


class DurableLog:
    def __init__(
        self,
        root: str | Path,
        *,
        tail_bytes: int = DEFAULT_TAIL_BYTES,
        max_file_bytes: int = 0,
        keep_segments: int = 3,
        fsync: bool = False,
    ) -> None:
        self.root = Path(root)
        self.tail_bytes = max(1, int(tail_bytes))
        self.max_file_bytes = max(0, int(max_file_bytes))
        self.keep_segments = max(1, int(keep_segments))
        self.fsync = bool(fsync)

        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    # -- paths ----------------------------------------------------------------

    def path_for(self, device_id: str) -> Path:
        return self.root / f"{safe_id(device_id)}{LOG_SUFFIX}"

    def _segment(self, base: Path, index: int) -> Path:
        return base.with_name(f"{base.name}.{index}")

    def _segments(self, device_id: str) -> list[Path]:
        base = self.path_for(device_id)
        return [base] + [self._segment(base, i) for i in range(1, self.keep_segments + 1)]

    def _file_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def list_device_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name[: -len(LOG_SUFFIX)] for p in self.root.glob(f"*{LOG_SUFFIX}") if p.is_file())

    # -- writes ---------------------------------------------------------------

    def append(self, sample: MetricSample) -> None:
        path = self.path_for(sample.device_id)
        line = sample.to_json_line() + "\n"
        with self._file_lock(path.name):
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.flush()
                    if self.fsync:
                        os.fsync(fh.fileno())
            except OSError as exc:
                raise PersistenceFailure(
                    "failed to append sample",
                    device_id=sample.device_id,
                    path=str(path),
                ) from exc

    def rotate(self, device_id: str, *, force: bool = False) -> bool:
        """Rotate one device file when it is over the size limit."""

        base = self.path_for(device_id)
        with self._file_lock(base.name):
            try:
                size = base.stat().st_size
            except FileNotFoundError:
                return False
            if not force and (self.max_file_bytes <= 0 or size <= self.max_file_bytes):
                return False

            self._segment(base, self.keep_segments).unlink(missing_ok=True)
            for i in range(self.keep_segments - 1, 0, -1):
                src = self._segment(base, i)
                if src.exists():
                    src.replace(self._segment(base, i + 1))
            base.replace(self._segment(base, 1))

        logger.info("durable_log_rotated", extra={"fields": {"device_id": device_id, "bytes": size}})
        return True

    def rotate_oversized(self) -> list[str]:
        if self.max_file_bytes <= 0:
            return []
        return [device_id for device_id in self.list_device_ids() if self.rotate(device_id)]

    # -- reads ----------------------------------------------------------------

    def _lines_newest_first(self, device_id: str) -> list[str]:
        # Rotation waits for the whole walk; each record comes from one segment.
        base = self.path_for(device_id)
        chunks: list[tuple[bytes, bool]] = []
        budget = self.tail_bytes
        with self._file_lock(base.name):
            for path in self._segments(device_id):
                if budget <= 0:
                    break
                try:
                    data, cut, partial = _read_tail(path, budget)
                except FileNotFoundError:
                    continue
                budget -= len(data)
                chunks.append((data, partial))
                if cut:
                    break

        out: list[str] = []
        for data, partial in chunks:
            lines = data.decode("utf-8", errors="replace").splitlines()
            if partial and lines:
                lines = lines[1:]
            out.extend(line for line in reversed(lines) if line.strip())
        return out

    def read_recent(self, device_id: str, cutoff: datetime, limit: int = 500) -> list[MetricSample]:
        """Samples at or after `cutoff`, oldest first, at most `limit`."""

        if limit <= 0:
            return []
        cutoff = normalize_utc(cutoff)
        out: list[MetricSample] = []
        for line in self._lines_newest_first(device_id):
            sample = parse_log_line(line)
            if sample is None:
                continue
            if sample_ts(sample) < cutoff:
                break
            out.append(sample)
            if len(out) >= limit:
                break
        out.reverse()
        return out

    def read_recent_all_devices(self, cutoff: datetime, limit: int = 300) -> list[MetricSample]:
        if limit <= 0:
            return []
        per_device = min(limit, 200)
        merged: list[MetricSample] = []
        for device_id in self.list_device_ids():
            merged.extend(self.read_recent(device_id, cutoff, per_device))
        merged.sort(key=sample_ts)
        return merged[-limit:]


class DurableLogWriter:
    """Moves durable appends off the request path.

    `submit` never raises. In async mode samples go through a bounded queue to
    one writer thread; a full queue drops the sample. In sync mode the append
    runs inline. Either way a failed write is logged and counted, and the
    caller carries on.
    """

    def __init__(
        self,
        log: DurableLog,
        *,
        mode: Literal["async", "sync"] = "async",
        max_queue: int = 10_000,
    ) -> None:
        if mode not in {"async", "sync"}:
            raise ValueError(f"unknown durable log write mode: {mode!r}")
        self.log = log
        self.mode = mode
        self._queue: queue.Queue[MetricSample | None] = queue.Queue(maxsize=max(1, int(max_queue)))
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self._closed = False
        self._failures = 0
        self._written = 0

    @property
    def failures(self) -> int:
        with self._state_lock:
            return self._failures

    @property
    def written(self) -> int:
        with self._state_lock:
            return self._written

    def _ensure_started(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            thread = threading.Thread(target=self._run, name="durable-log-writer", daemon=True)
            thread.start()
            self._thread = thread

    def submit(self, sample: MetricSample) -> None:
        if self.mode == "sync":
            self._write(sample)
            return

        if self._closed:
            self._record_failure(sample, reason="writer_closed")
            return

        self._ensure_started()
        try:
            self._queue.put_nowait(sample)
        except queue.Full:
            self._record_failure(sample, reason="queue_full")

    def _write(self, sample: MetricSample) -> None:
        try:
            self.log.append(sample)
        except PersistenceFailure as exc:
            self._record_failure(sample, reason="append_failed", error=exc)
        except Exception as exc:
            logger.exception("durable_log_unexpected_error", extra={"fields": {"device_id": sample.device_id}})
            self._record_failure(sample, reason="unexpected_error", error=exc)
        else:
            with self._state_lock:
                self._written += 1

    def _record_failure(self, sample: MetricSample, *, reason: str, error: Exception | None = None) -> None:
        with self._state_lock:
            self._failures += 1
        fields: dict[str, object] = {"device_id": sample.device_id, "reason": reason}
        if error is not None:
            fields["error"] = repr(error.__cause__ or error)
        logger.warning("durable_log_append_failed", extra={"fields": fields})
        record_durable_log_failure_metric(reason=reason)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every submitted sample has been handled."""

        if self.mode == "sync" or self._thread is None:
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("durable_log_writer_close_timeout", extra={"fields": {"pending": self._queue.qsize()}})
            return
        thread.join(timeout)
