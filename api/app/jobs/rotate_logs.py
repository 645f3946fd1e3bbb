from __future__ import annotations

import logging
import time

from ..config import settings
from ..observability import configure_logging
from ..services.durable_log import DurableLog


logger = logging.getLogger("pulseboard.job.rotate_logs")


def run_rotation(log: DurableLog) -> list[str]:
    """Rotate every device log over the size limit. Returns the rotated device ids."""

    start = time.perf_counter()
    rotated = log.rotate_oversized()
    duration_ms = int((time.perf_counter() - start) * 1000)
    if rotated:
        logger.info(
            "rotation_pass",
            extra={"fields": {"rotated": len(rotated), "duration_ms": duration_ms}},
        )
    return rotated


def main() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    log = DurableLog(
        settings.metrics_dir,
        tail_bytes=settings.durable_log_tail_bytes,
        max_file_bytes=settings.durable_log_max_bytes,
        keep_segments=settings.durable_log_keep_segments,
    )
    rotated = run_rotation(log)
    logger.info("rotate_logs complete", extra={"fields": {"rotated": rotated}})


if __name__ == "__main__":
    main()
