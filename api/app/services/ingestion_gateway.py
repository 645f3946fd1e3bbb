from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import BadPayload, RateLimited, Unauthenticated
from ..models import Device
from ..observability import record_heartbeat_metric
from ..rate_limit import TokenBucketLimiter
from ..schemas import MetricSample
from ..security import resolve_credentials
from .device_registry import DeviceRegistry
from .durable_log import DurableLogWriter
from .ingest_pipeline import build_sample
from .pubsub import PubSub
from .sample_buffer import SampleBuffer


logger = logging.getLogger("pulseboard.ingest")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hostname_from(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    value = body.get("hostname")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class IngestionGateway:
    """Runs one heartbeat through authentication, normalization and fan-out.

    Every check that can reject a heartbeat runs before anything is mutated,
    so a rejected request leaves the registry, buffer and log untouched.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        buffer: SampleBuffer,
        log_writer: DurableLogWriter,
        pubsub: PubSub,
        limiter: TokenBucketLimiter | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.registry = registry
        self.buffer = buffer
        self.log_writer = log_writer
        self.pubsub = pubsub
        self.limiter = limiter
        self.clock = clock

    def _precheck(self, device_id: str, token: str) -> None:
        """Reject missing credentials, and a wrong token for a device already known.

        Unknown devices pass here; `_claim` settles them atomically once the
        payload has been accepted.
        """

        if not device_id or not token:
            raise Unauthenticated("missing device credentials")
        if self.registry.get(device_id) is not None and not self.registry.verify(device_id, token):
            logger.warning("device_auth_failed", extra={"fields": {"device_id": device_id}})
            raise Unauthenticated("invalid device credentials")

    def _claim(self, device_id: str, token: str, hostname: str | None) -> Device:
        device = self.registry.authenticate_or_provision(device_id, token, hostname)
        if device is None:
            logger.warning("device_auth_failed", extra={"fields": {"device_id": device_id}})
            raise Unauthenticated("invalid device credentials")
        return device

    def authenticate(
        self,
        device_id: str | None,
        token: str | None,
        hostname: str | None = None,
        *,
        body: Any = None,
    ) -> Device:
        """Resolve and check credentials, provisioning an unknown device."""

        device_id, token = resolve_credentials(header_device_id=device_id, header_token=token, body=body)
        self._precheck(device_id, token)
        return self._claim(device_id, token, hostname or _hostname_from(body))

    def ingest(self, device_id: str | None, token: str | None, body: Any) -> MetricSample:
        device_id, token = resolve_credentials(header_device_id=device_id, header_token=token, body=body)
        try:
            self._precheck(device_id, token)
        except Unauthenticated:
            record_heartbeat_metric(outcome="unauthenticated")
            raise

        if self.limiter is not None:
            allowed, retry_after = self.limiter.allow(key=device_id)
            if not allowed:
                record_heartbeat_metric(outcome="rate_limited")
                logger.warning(
                    "heartbeat_rate_limited",
                    extra={"fields": {"device_id": device_id, "retry_after_s": retry_after}},
                )
                raise RateLimited("heartbeat rate limit exceeded", retry_after_s=retry_after)

        try:
            sample = build_sample(device_id=device_id, body=body, now=self.clock())
        except BadPayload:
            record_heartbeat_metric(outcome="bad_payload")
            raise

        hostname = _hostname_from(body)
        try:
            self._claim(device_id, token, hostname)
        except Unauthenticated:
            record_heartbeat_metric(outcome="unauthenticated")
            raise

        self.buffer.append(sample)
        self.log_writer.submit(sample)
        self.registry.touch_presence(device_id, hostname, now=self.clock())
        delivered = self.pubsub.publish(sample)

        record_heartbeat_metric(outcome="accepted")
        logger.info(
            "heartbeat",
            extra={
                "fields": {
                    "device_id": device_id,
                    "hostname": sample.hostname,
                    "agent_version": sample.agent_version,
                    "subscribers": delivered,
                }
            },
        )
        return sample
