from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .ingest_pipeline import parse_timestamp


LOG_FILE_NAME = "agent-metrics.log"
MAX_TAIL_BYTES = 16 * 1024 * 1024

DEFAULT_MINUTES = 10
MIN_MINUTES = 1
MAX_MINUTES = 12 * 60


def clamp_minutes(raw: Any) -> int:
    if isinstance(raw, str):
        try:
            raw = int(raw.strip(), 10)
        except ValueError:
            return DEFAULT_MINUTES
    if isinstance(raw, bool) or not isinstance(raw, int):
        return DEFAULT_MINUTES
    return max(MIN_MINUTES, min(raw, MAX_MINUTES))


def resolve_log_path(explicit: Optional[str] = None, *, cwd: Optional[Path] = None) -> Optional[Path]:
    """Find the agent's metrics log.

    An explicit path wins when it exists; otherwise look for
    `agent-metrics.log` in the working directory and its two parents.
    """

    if explicit:
        candidate = Path(explicit).resolve()
        if candidate.is_file():
            return candidate

    base = (cwd or Path.cwd()).resolve()
    for directory in (base, base.parent, base.parent.parent):
        candidate = directory / LOG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def _read_tail_text(path: Path, max_bytes: int) -> str:
    with open(path, "rb") as fh:
        size = fh.seek(0, 2)
        start = max(0, size - max_bytes)
        fh.seek(start)
        return fh.read().decode("utf-8", errors="replace")


def read_recent_log_lines(
    path: Path,
    minutes: int,
    *,
    now: Optional[datetime] = None,
    max_bytes: int = MAX_TAIL_BYTES,
) -> list[str]:
    """Raw JSON lines whose `timestamp` is within the last `minutes`, oldest first.

    Scans backward from the end and stops at the first line older than the
    cutoff. Lines that are not JSON or carry no usable timestamp are skipped.
    """

    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=minutes)

    keep: list[str] = []
    for line in reversed(_read_tail_text(path, max_bytes).splitlines()):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        ts = parse_timestamp(obj.get("timestamp")) if isinstance(obj, dict) else None
        if ts is None:
            continue
        if ts < cutoff:
            break
        keep.append(line)

    keep.reverse()
    return keep
