"""Trusted device registry.

Devices live as an ordered list on ``profiles.trusted_devices``. Writes
are read-modify-write guarded by the profile's version column and
retried when another request changed the list first.
"""
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config.settings import TRUSTED_DEVICE_DAYS
from ..core.clock import Clock, utcnow, parse_timestamp
from ..services.audit_events import TrustedDeviceAdded, TrustedDeviceRemoved
from ..services.audit_logging_service import AuditLoggingService
from .profiles import load_profile, update_profile
from .schemas_mfa import ClientSignals, TrustedDeviceResponse

TrustedDevice = Dict[str, str]


def get_device_name(user_agent: Optional[str]) -> str:
    """Coarse browser or OS family from a user agent string."""
    ua = user_agent or ""

    if "Chrome" in ua and "Edg" not in ua:
        return "Chrome"
    if "Safari" in ua and "Chrome" not in ua:
        return "Safari"
    if "Firefox" in ua:
        return "Firefox"
    if "Edg" in ua:
        return "Edge"

    if "Mac" in ua:
        return "Mac"
    if "Windows" in ua:
        return "Windows"
    if "Linux" in ua:
        return "Linux"
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua:
        return "iOS"

    return "Unknown Device"


def generate_device_fingerprint(signals: ClientSignals) -> str:
    """Low-entropy convenience identifier; prevents accidental collisions, not spoofing."""
    components = [
        signals.user_agent or "",
        signals.language or "",
        signals.screen_resolution or "",
        str(signals.timezone_offset) if signals.timezone_offset is not None else "",
        str(signals.hardware_concurrency) if signals.hardware_concurrency is not None else "unknown",
    ]
    return hashlib.sha256("|".join(components).encode()).hexdigest()[:32]


def create_trusted_device(signals: ClientSignals, duration_days: int, now: datetime) -> TrustedDevice:
    return {
        "id": str(uuid.uuid4()),
        "name": get_device_name(signals.user_agent),
        "fingerprint": generate_device_fingerprint(signals),
        "added_at": now.isoformat(),
        "expires_at": (now + timedelta(days=duration_days)).isoformat(),
        "last_used": now.isoformat(),
    }


def is_device_expired(device: TrustedDevice, now: datetime) -> bool:
    return parse_timestamp(device["expires_at"]) <= now


def is_device_trusted(devices: Optional[List[TrustedDevice]], device_id: Optional[str], now: datetime) -> bool:
    """Trusted iff a matching entry exists and expires strictly after ``now``."""
    if not devices or not device_id:
        return False

    device = next((d for d in devices if d.get("id") == device_id), None)
    if device is None:
        return False

    return not is_device_expired(device, now)


def to_device_response(device: TrustedDevice, now: datetime, current_device_id: Optional[str] = None) -> TrustedDeviceResponse:
    return TrustedDeviceResponse(
        id=device["id"],
        name=device["name"],
        fingerprint=device["fingerprint"],
        added_at=parse_timestamp(device["added_at"]),
        expires_at=parse_timestamp(device["expires_at"]),
        last_used=parse_timestamp(device["last_used"]),
        is_expired=is_device_expired(device, now),
        is_current=device["id"] == current_device_id,
    )


class TrustedDeviceRegistry:
    """Add, check and remove a user's trusted devices."""

    def __init__(self, db: Session, audit: AuditLoggingService, clock: Clock = utcnow):
        self.db = db
        self.audit = audit
        self.clock = clock

    def _write(self, user_id: str, mutate: Callable[[List[TrustedDevice]], List[TrustedDevice]]) -> List[TrustedDevice]:
        """Apply ``mutate`` to the stored list, retrying on a concurrent update."""
        def apply(profile):
            # Assign a new list so the JSON column is flagged dirty
            profile.trusted_devices = mutate(list(profile.trusted_devices or []))
            return profile.trusted_devices

        return update_profile(self.db, user_id, apply)

    def list_devices(self, user_id: str) -> List[TrustedDevice]:
        return list(load_profile(self.db, user_id).trusted_devices or [])

    async def add_device(
        self,
        user_id: str,
        signals: ClientSignals,
        duration_days: int = TRUSTED_DEVICE_DAYS,
    ) -> TrustedDevice:
        """Prune expired entries, append a new device and return it."""
        now = self.clock()
        device = create_trusted_device(signals, duration_days, now)

        def prune_and_append(devices: List[TrustedDevice]) -> List[TrustedDevice]:
            valid = [d for d in devices if not is_device_expired(d, now)]
            return valid + [device]

        self._write(user_id, prune_and_append)

        await self.audit.record(
            TrustedDeviceAdded(
                device_id=device["id"],
                device_name=device["name"],
                expires_at=device["expires_at"],
            ),
            actor_id=user_id,
        )
        return device

    def check_device(self, user_id: str, device_id: Optional[str], touch: bool = False) -> bool:
        """Whether the locally persisted device id is currently trusted."""
        if not device_id:
            return False

        now = self.clock()
        devices = self.list_devices(user_id)
        if not is_device_trusted(devices, device_id, now):
            return False

        if touch:
            def mark_used(current: List[TrustedDevice]) -> List[TrustedDevice]:
                return [
                    {**d, "last_used": now.isoformat()} if d.get("id") == device_id else d
                    for d in current
                ]
            self._write(user_id, mark_used)
        return True

    async def remove_device(self, user_id: str, device_id: str) -> bool:
        """Remove a device from the list. Returns False if it was not present."""
        removed = False

        def drop(devices: List[TrustedDevice]) -> List[TrustedDevice]:
            nonlocal removed
            remaining = [d for d in devices if d.get("id") != device_id]
            removed = len(remaining) != len(devices)
            return remaining

        self._write(user_id, drop)

        if removed:
            await self.audit.record(TrustedDeviceRemoved(device_id=device_id), actor_id=user_id)
        return removed
