from __future__ import annotations

import threading
from collections import deque

from ..schemas import MetricSample


MAX_SAMPLES = 500


class SampleBuffer:
    """Global live tail of the most recent samples across all devices.

    Not indexed by device: callers filter on `device_id` after reading.
    Per-device history belongs to the durable log.
    """

    def __init__(self, capacity: int = MAX_SAMPLES) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._lock = threading.Lock()
        self._samples: deque[MetricSample] = deque(maxlen=self.capacity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def append(self, sample: MetricSample) -> None:
        # deque(maxlen) drops from the left once full.
        with self._lock:
            self._samples.append(sample)

    def recent(self, limit: int | None = None) -> list[MetricSample]:
        """Newest `limit` samples, oldest first. A missing, zero or negative limit returns the whole buffer."""
        with self._lock:
            items = list(self._samples)
        if limit and limit > 0:
            return items[-limit:]
        return items

    def latest(self) -> MetricSample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None
