"""Service container for one app instance.

`build_core` constructs every stateful service once; `create_app` stores the
result on `app.state.core` and handlers reach it through the dependency
functions below instead of module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from .config import Settings
from .rate_limit import TokenBucketLimiter
from .services.agent_config import AgentConfigStore
from .services.device_registry import DeviceRegistry
from .services.durable_log import DurableLog, DurableLogWriter
from .services.history import HistoryAggregator
from .services.ingestion_gateway import IngestionGateway
from .services.live_stream import EventStream
from .services.pubsub import PubSub
from .services.sample_buffer import SampleBuffer


logger = logging.getLogger("pulseboard.core")


@dataclass
class TelemetryCore:
    settings: Settings
    registry: DeviceRegistry
    buffer: SampleBuffer
    log: DurableLog
    log_writer: DurableLogWriter
    pubsub: PubSub
    gateway: IngestionGateway
    history: HistoryAggregator
    events: EventStream
    agent_config: AgentConfigStore

    def close(self) -> None:
        self.log_writer.close()


def build_core(settings: Settings) -> TelemetryCore:
    registry = DeviceRegistry()
    buffer = SampleBuffer(settings.sample_buffer_capacity)
    log = DurableLog(
        settings.metrics_dir,
        tail_bytes=settings.durable_log_tail_bytes,
        max_file_bytes=settings.durable_log_max_bytes,
        keep_segments=settings.durable_log_keep_segments,
        fsync=settings.durable_log_fsync,
    )
    log_writer = DurableLogWriter(
        log,
        mode=settings.durable_log_write_mode,
        max_queue=settings.durable_log_queue_size,
    )
    pubsub = PubSub()
    limiter = TokenBucketLimiter.per_minute(
        settings.heartbeat_rate_limit_per_min,
        enabled=settings.rate_limit_enabled,
    )

    core = TelemetryCore(
        settings=settings,
        registry=registry,
        buffer=buffer,
        log=log,
        log_writer=log_writer,
        pubsub=pubsub,
        gateway=IngestionGateway(
            registry=registry,
            buffer=buffer,
            log_writer=log_writer,
            pubsub=pubsub,
            limiter=limiter,
        ),
        history=HistoryAggregator(log),
        events=EventStream(pubsub, keepalive_s=settings.sse_keepalive_s),
        agent_config=AgentConfigStore(settings.agent_config_path),
    )

    if settings.bootstrap_demo_device:
        _bootstrap_demo_device(core)
    return core


def _bootstrap_demo_device(core: TelemetryCore) -> None:
    s = core.settings
    core.registry.ensure_device(s.demo_device_id, s.demo_device_token, name=s.demo_device_name)
    logger.info("Bootstrapped demo device (device_id=%s)", s.demo_device_id)


# -----------------------------------------------------------------------------
# FastAPI dependencies
# -----------------------------------------------------------------------------


def get_core(request: Request) -> TelemetryCore:
    return request.app.state.core


def get_gateway(request: Request) -> IngestionGateway:
    return get_core(request).gateway
