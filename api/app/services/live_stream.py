"""Server-sent event stream of newly ingested samples.

The stream is an async generator. It subscribes to PubSub when iteration
starts and unsubscribes in `finally`, so a client disconnect (the server
cancels or closes the generator) releases the handler in the same step.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from ..schemas import MetricSample
from .pubsub import PubSub


logger = logging.getLogger("pulseboard.live_stream")

KEEPALIVE_FRAME = ": keep-alive\n\n"
DEFAULT_QUEUE_SIZE = 256


def format_event(event: str, data: Any) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


class EventStream:
    def __init__(
        self,
        pubsub: PubSub,
        *,
        keepalive_s: float = 15.0,
        max_queue: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.pubsub = pubsub
        self.keepalive_s = keepalive_s
        self.max_queue = max(1, int(max_queue))

    async def frames(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[MetricSample] = asyncio.Queue(maxsize=self.max_queue)
        dropped = 0

        def _enqueue(sample: MetricSample) -> None:
            nonlocal dropped
            try:
                queue.put_nowait(sample)
            except asyncio.QueueFull:
                dropped += 1

        def _on_sample(sample: MetricSample) -> None:
            # Called from the publishing thread.
            try:
                loop.call_soon_threadsafe(_enqueue, sample)
            except RuntimeError:
                # Loop already closed; the stream is going away.
                pass

        unsubscribe = self.pubsub.subscribe(_on_sample)
        logger.info("live_stream_opened", extra={"fields": {"subscribers": self.pubsub.subscriber_count}})
        try:
            yield format_event("ready", {})
            # Keep-alives run on their own clock; a busy stream still gets them.
            next_keepalive = loop.time() + self.keepalive_s
            while True:
                remaining = next_keepalive - loop.time()
                if remaining <= 0:
                    yield KEEPALIVE_FRAME
                    next_keepalive = loop.time() + self.keepalive_s
                    continue
                try:
                    sample = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
                yield format_event("metric", sample.to_wire())
        finally:
            unsubscribe()
            logger.info("live_stream_closed", extra={"fields": {"dropped": dropped}})
