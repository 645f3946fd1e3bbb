from __future__ import annotations

import logging
import threading
from typing import Callable

from ..schemas import MetricSample


logger = logging.getLogger("pulseboard.pubsub")

Handler = Callable[[MetricSample], None]
Unsubscribe = Callable[[], None]


class _Subscription:
    __slots__ = ("handler", "active")

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.active = True


class PubSub:
    """In-process fan-out of newly ingested samples.

    `publish` works on the subscriber list as it was when the call started:
    handlers added meanwhile wait for the next publish. A handler removed
    mid-publish is skipped if its turn has not come yet. Delivery is one
    synchronous attempt per handler with no replay.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[_Subscription] = []

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, handler: Handler) -> Unsubscribe:
        sub = _Subscription(handler)
        with self._lock:
            self._subscriptions.append(sub)

        def unsubscribe() -> None:
            with self._lock:
                if not sub.active:
                    return
                sub.active = False
                self._subscriptions.remove(sub)

        return unsubscribe

    def publish(self, sample: MetricSample) -> int:
        with self._lock:
            snapshot = list(self._subscriptions)

        attempted = 0
        for sub in snapshot:
            if not sub.active:
                continue
            attempted += 1
            try:
                sub.handler(sample)
            except Exception:
                logger.exception(
                    "subscriber_failed",
                    extra={"fields": {"device_id": sample.device_id}},
                )
        return attempted
