from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Literal


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return float(v)


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return [s.strip() for s in v.split(",") if s.strip()]


def _get_optional_str(name: str) -> str | None:
    v = os.getenv(name)
    if v is None:
        return None
    vv = v.strip()
    return vv or None


DurableLogWriteMode = Literal["async", "sync"]


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str
    enable_otel: bool

    # Background jobs
    enable_scheduler: bool

    # API surface toggles
    enable_docs: bool
    enable_ingest_routes: bool
    enable_read_routes: bool

    # CORS
    cors_allow_origins: List[str]

    # Safety limits
    max_request_body_bytes: int
    rate_limit_enabled: bool
    heartbeat_rate_limit_per_min: int

    # Storage
    data_dir: str
    sample_buffer_capacity: int
    durable_log_write_mode: DurableLogWriteMode
    durable_log_queue_size: int
    durable_log_fsync: bool
    durable_log_tail_bytes: int
    durable_log_max_bytes: int
    durable_log_keep_segments: int
    log_rotation_interval_s: int

    # Live stream
    sse_keepalive_s: float

    # Agent-side collaborators
    metrics_log_path: str | None
    agent_config_path: str
    agent_apply_enabled: bool

    # Demo bootstrap (dev-only by default)
    bootstrap_demo_device: bool
    demo_device_id: str
    demo_device_name: str
    demo_device_token: str

    @property
    def metrics_dir(self) -> str:
        return os.path.join(self.data_dir, "metrics")


def load_settings() -> Settings:
    app_env = (os.getenv("APP_ENV", "dev").strip() or "dev").lower()

    # Route surface toggles let the same image run as a public ingest service
    # (agents only) or as a private dashboard backend.
    enable_ingest_routes = _get_bool("ENABLE_INGEST_ROUTES", True)
    enable_read_routes = _get_bool("ENABLE_READ_ROUTES", True)

    write_mode = os.getenv("DURABLE_LOG_WRITE_MODE", "async").strip().lower() or "async"
    if write_mode not in {"async", "sync"}:
        raise RuntimeError("DURABLE_LOG_WRITE_MODE must be one of: async, sync")

    log_format = os.getenv("LOG_FORMAT", "text").strip().lower() or "text"
    if log_format not in {"text", "json"}:
        raise RuntimeError("LOG_FORMAT must be one of: text, json")

    capacity = _get_int("SAMPLE_BUFFER_CAPACITY", 500)
    if capacity <= 0:
        raise RuntimeError("SAMPLE_BUFFER_CAPACITY must be positive")

    data_dir = os.path.abspath(os.getenv("PULSEBOARD_DATA_DIR", "./.pulseboard").strip() or "./.pulseboard")
    agent_config_path = os.path.abspath(
        os.getenv("AGENT_CONFIG_PATH", "./dist/agent.config.json").strip() or "./dist/agent.config.json"
    )

    cors_default = ["*"] if app_env == "dev" else []
    dev = app_env == "dev"

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=log_format,
        enable_otel=_get_bool("ENABLE_OTEL", False),
        enable_scheduler=_get_bool("ENABLE_SCHEDULER", True),
        enable_docs=_get_bool("ENABLE_DOCS", dev),
        enable_ingest_routes=enable_ingest_routes,
        enable_read_routes=enable_read_routes,
        cors_allow_origins=_get_list("CORS_ALLOW_ORIGINS", cors_default),
        max_request_body_bytes=_get_int("MAX_REQUEST_BODY_BYTES", 1_000_000),
        rate_limit_enabled=_get_bool("RATE_LIMIT_ENABLED", True),
        # Agents report every few seconds; 600/min only trips on runaway loops.
        heartbeat_rate_limit_per_min=_get_int("HEARTBEAT_RATE_LIMIT_PER_MIN", 600),
        data_dir=data_dir,
        sample_buffer_capacity=capacity,
        durable_log_write_mode=write_mode,  # type: ignore[arg-type]
        durable_log_queue_size=max(1, _get_int("DURABLE_LOG_QUEUE_SIZE", 10_000)),
        durable_log_fsync=_get_bool("DURABLE_LOG_FSYNC", not dev),
        durable_log_tail_bytes=max(4096, _get_int("DURABLE_LOG_TAIL_BYTES", 1024 * 1024)),
        durable_log_max_bytes=max(0, _get_int("DURABLE_LOG_MAX_BYTES", 64 * 1024 * 1024)),
        durable_log_keep_segments=max(1, _get_int("DURABLE_LOG_KEEP_SEGMENTS", 3)),
        log_rotation_interval_s=max(10, _get_int("LOG_ROTATION_INTERVAL_S", 300)),
        sse_keepalive_s=max(0.01, _get_float("SSE_KEEPALIVE_S", 15.0)),
        metrics_log_path=_get_optional_str("METRICS_LOG_PATH"),
        agent_config_path=agent_config_path,
        agent_apply_enabled=_get_bool("AGENT_APPLY_ENABLED", dev),
        bootstrap_demo_device=_get_bool("BOOTSTRAP_DEMO_DEVICE", False),
        demo_device_id=os.getenv("DEMO_DEVICE_ID", "demo-pc-001"),
        demo_device_name=os.getenv("DEMO_DEVICE_NAME", "Demo PC"),
        demo_device_token=os.getenv("DEMO_DEVICE_TOKEN", "dev-device-token-001"),
    )


settings = load_settings()
