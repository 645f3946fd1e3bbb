from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from datetime import datetime, timezone

from ..models import Device, DeviceStatus, DeviceView, EnrollResult
from ..security import generate_token, hash_token, verify_token


logger = logging.getLogger("pulseboard.devices")

# A device counts as online while its last heartbeat is younger than this.
OFFLINE_AFTER_S = 90


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def safe_display_name(device_id: str, display_name: str | None) -> str:
    """Return a UI-safe display name even for devices that never sent one."""
    candidate = (display_name or "").strip()
    if candidate:
        return candidate
    return f"device-{device_id[:6]}"


def compute_status(device: Device, now: datetime | None = None) -> tuple[DeviceStatus, int | None]:
    if now is None:
        now = utcnow()
    if device.last_seen_at is None:
        return "offline", None
    delta = (now - device.last_seen_at).total_seconds()
    seconds = int(delta)
    if delta < OFFLINE_AFTER_S:
        return "online", seconds
    return "offline", seconds


class DeviceRegistry:
    """In-memory device identities, token digests and presence.

    Devices are matched by id first. When an id is unknown, enrollment and
    auto-provisioning fall back to a case-insensitive name match and move that
    record to the new id, so a reinstalled agent on the same machine keeps its
    history row instead of creating a duplicate.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._devices: list[Device] = []
        self._by_id: dict[str, Device] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def _find_by_name(self, name: str) -> Device | None:
        wanted = name.strip().lower()
        for d in self._devices:
            if d.name.lower() == wanted:
                return d
        return None

    def _reassign_id(self, device: Device, new_id: str) -> None:
        if self._by_id.get(device.id) is device:
            del self._by_id[device.id]
        device.id = new_id
        self._by_id[new_id] = device

    def enroll(self, name: str) -> EnrollResult:
        device_id = str(uuid.uuid4())
        token = generate_token()
        token_hash = hash_token(token)

        with self._lock:
            existing = self._find_by_name(name)
            if existing is not None:
                self._reassign_id(existing, device_id)
                existing.token_hash = token_hash
                existing.last_seen_at = None
                existing.hostname = existing.hostname or name
                logger.info(
                    "device_reenrolled",
                    extra={"fields": {"device_id": device_id, "name": existing.name}},
                )
                return EnrollResult(id=device_id, token=token, updated_existing=True)

            device = Device(id=device_id, name=name, token_hash=token_hash)
            self._devices.append(device)
            self._by_id[device_id] = device

        logger.info("device_enrolled", extra={"fields": {"device_id": device_id, "name": name}})
        return EnrollResult(id=device_id, token=token, updated_existing=False)

    def ensure_device(
        self,
        device_id: str,
        token: str,
        hostname: str | None = None,
        *,
        name: str | None = None,
    ) -> Device:
        """Return the device for `device_id`, provisioning it on first sight.

        The token presented on first contact becomes the device's credential.
        """

        with self._lock:
            found = self._by_id.get(device_id)
            if found is not None:
                return dataclasses.replace(found)

            if hostname:
                match = self._find_by_name(hostname)
                if match is not None:
                    previous_id = match.id
                    self._reassign_id(match, device_id)
                    if token:
                        match.token_hash = hash_token(token)
                    logger.info(
                        "device_reidentified",
                        extra={"fields": {"device_id": device_id, "previous_id": previous_id}},
                    )
                    return dataclasses.replace(match)

            device = Device(
                id=device_id,
                name=(name or "").strip() or safe_display_name(device_id, hostname),
                token_hash=hash_token(token) if token else "",
            )
            self._devices.append(device)
            self._by_id[device_id] = device

        logger.info("device_provisioned", extra={"fields": {"device_id": device_id}})
        return dataclasses.replace(device)

    def get(self, device_id: str) -> Device | None:
        with self._lock:
            found = self._by_id.get(device_id)
            return dataclasses.replace(found) if found is not None else None

    def verify(self, device_id: str, token: str | None) -> bool:
        if not device_id or not token:
            return False
        with self._lock:
            found = self._by_id.get(device_id)
            token_hash = found.token_hash if found is not None else None
        return verify_token(token, token_hash)

    def authenticate_or_provision(
        self, device_id: str, token: str | None, hostname: str | None = None
    ) -> Device | None:
        """Verify `token` for a known device, or provision an unknown one.

        Lookup and provisioning happen under one lock hold, so two first
        heartbeats for the same id cannot both be accepted with different
        tokens. Returns None when the credentials do not match.
        """

        if not device_id or not token:
            return None
        with self._lock:
            found = self._by_id.get(device_id)
            if found is None:
                return self.ensure_device(device_id, token, hostname)
            if not verify_token(token, found.token_hash):
                return None
            return dataclasses.replace(found)

    def touch_presence(
        self, device_id: str, hostname: str | None = None, *, now: datetime | None = None
    ) -> None:
        with self._lock:
            found = self._by_id.get(device_id)
            if found is None:
                return
            found.last_seen_at = now or utcnow()
            if hostname:
                found.hostname = hostname

    def list_devices(self, now: datetime | None = None) -> list[DeviceView]:
        if now is None:
            now = utcnow()
        with self._lock:
            snapshot = [dataclasses.replace(d) for d in self._devices]

        out: list[DeviceView] = []
        for d in snapshot:
            status, seconds = compute_status(d, now)
            out.append(
                DeviceView(
                    id=d.id,
                    name=d.name,
                    status=status,
                    hostname=d.hostname,
                    last_seen_at=d.last_seen_at,
                    seconds_since_seen=seconds,
                )
            )
        return out
