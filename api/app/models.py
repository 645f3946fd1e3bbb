from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


DeviceStatus = Literal["online", "offline"]


@dataclass
class Device:
    """A device known to this process.

    Lives only in memory; a restart forgets every device and agents
    re-provision on their next heartbeat.
    """

    id: str
    name: str
    token_hash: str
    last_seen_at: datetime | None = None
    hostname: str | None = None


@dataclass(frozen=True)
class DeviceView:
    id: str
    name: str
    status: DeviceStatus
    hostname: str | None
    last_seen_at: datetime | None
    seconds_since_seen: int | None


@dataclass(frozen=True)
class EnrollResult:
    id: str
    token: str
    updated_existing: bool
