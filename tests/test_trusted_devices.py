"""Tests for the trusted device registry."""
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from auditready.auth.exceptions import MFAPreconditionError
from auditready.auth.schemas_mfa import ClientSignals
from auditready.auth.trusted_devices import (
    TrustedDeviceRegistry,
    create_trusted_device,
    generate_device_fingerprint,
    get_device_name,
    is_device_trusted,
)
from auditready.models.audit import AuditLog
from auditready.models.profile import Profile

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
EDGE_UA = CHROME_UA + " Edg/120.0.0.0"
SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
)
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def signals():
    return ClientSignals(
        user_agent=CHROME_UA,
        language="en-US",
        screen_resolution="1920x1080",
        timezone_offset=-60,
        hardware_concurrency=8,
    )


class TestDeviceRecord:
    @pytest.mark.parametrize("user_agent,expected", [
        (CHROME_UA, "Chrome"),
        (EDGE_UA, "Edge"),
        (SAFARI_UA, "Safari"),
        (FIREFOX_UA, "Firefox"),
        ("SomeBot/1.0 (Linux)", "Linux"),
        ("", "Unknown Device"),
        (None, "Unknown Device"),
    ])
    def test_device_name(self, user_agent, expected):
        assert get_device_name(user_agent) == expected

    def test_fingerprint_is_stable_and_truncated(self, signals):
        first = generate_device_fingerprint(signals)
        second = generate_device_fingerprint(signals.model_copy())

        assert first == second
        assert len(first) == 32
        assert first != generate_device_fingerprint(signals.model_copy(update={"language": "de-DE"}))

    def test_new_device_expires_after_duration(self, signals, clock):
        device = create_trusted_device(signals, 30, clock())

        assert device["name"] == "Chrome"
        assert device["added_at"] == clock().isoformat()
        assert device["expires_at"] == (clock() + timedelta(days=30)).isoformat()

    def test_expired_device_is_not_trusted(self, signals, clock):
        device = create_trusted_device(signals, 30, clock())

        assert is_device_trusted([device], device["id"], clock()) is True
        assert is_device_trusted([device], device["id"], clock() + timedelta(days=30)) is False
        assert is_device_trusted([device], "other-device", clock()) is False
        assert is_device_trusted([], device["id"], clock()) is False
        assert is_device_trusted([device], None, clock()) is False


class TestTrustedDeviceRegistry:
    @pytest.mark.asyncio
    async def test_device_expires_after_thirty_days(self, registry, profile, signals, clock):
        """Add D1 with 30-day expiry, advance 31 days: no longer trusted."""
        device = await registry.add_device(profile.id, signals, 30)
        assert registry.check_device(profile.id, device["id"]) is True

        clock.advance(days=31)
        assert registry.check_device(profile.id, device["id"]) is False

    @pytest.mark.asyncio
    async def test_expired_device_is_kept_until_next_add(self, registry, profile, signals, clock):
        old = await registry.add_device(profile.id, signals, 30)
        clock.advance(days=31)

        assert [d["id"] for d in registry.list_devices(profile.id)] == [old["id"]]

    @pytest.mark.asyncio
    async def test_add_prunes_expired_entries(self, registry, profile, signals, clock):
        short = await registry.add_device(profile.id, signals, 1)
        long = await registry.add_device(profile.id, signals, 60)
        clock.advance(days=2)

        newest = await registry.add_device(profile.id, signals, 30)

        ids = [d["id"] for d in registry.list_devices(profile.id)]
        assert ids == [long["id"], newest["id"]]
        assert short["id"] not in ids

    @pytest.mark.asyncio
    async def test_check_touches_last_used(self, registry, profile, signals, clock):
        device = await registry.add_device(profile.id, signals)
        clock.advance(hours=5)

        assert registry.check_device(profile.id, device["id"], touch=True) is True
        stored = registry.list_devices(profile.id)[0]
        assert stored["last_used"] == clock().isoformat()

    @pytest.mark.asyncio
    async def test_remove_device(self, registry, profile, signals, db):
        first = await registry.add_device(profile.id, signals)
        second = await registry.add_device(profile.id, signals)

        assert await registry.remove_device(profile.id, first["id"]) is True
        assert [d["id"] for d in registry.list_devices(profile.id)] == [second["id"]]
        assert registry.check_device(profile.id, first["id"]) is False
        assert await registry.remove_device(profile.id, first["id"]) is False

        actions = [row.action for row in db.execute(select(AuditLog)).scalars().all()]
        assert actions.count("add_trusted_device") == 2
        assert actions.count("remove_trusted_device") == 1

    @pytest.mark.asyncio
    async def test_stale_write_is_detected(self, session_factory, audit, profile, signals, clock):
        """A write based on a read older than another tab's write is refused."""
        db_a = session_factory()
        db_b = session_factory()
        try:
            registry_a = TrustedDeviceRegistry(db_a, audit, clock)

            stale = db_b.get(Profile, profile.id)
            stale.trusted_devices = [{"id": "from-stale-read"}]

            device = await registry_a.add_device(profile.id, signals)

            with pytest.raises(StaleDataError):
                db_b.commit()
            db_b.rollback()

            assert [d["id"] for d in registry_a.list_devices(profile.id)] == [device["id"]]
        finally:
            db_a.close()
            db_b.close()

    @pytest.mark.asyncio
    async def test_conflicting_write_is_retried(self, registry, profile, signals, db):
        real_commit = db.commit
        calls = []

        def flaky_commit():
            calls.append(True)
            if len(calls) == 1:
                raise StaleDataError("conflict")
            return real_commit()

        with patch.object(db, "commit", side_effect=flaky_commit):
            device = await registry.add_device(profile.id, signals)

        assert len(calls) >= 2
        assert [d["id"] for d in registry.list_devices(profile.id)] == [device["id"]]

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, registry, profile, signals, db):
        with patch.object(db, "commit", side_effect=StaleDataError("conflict")):
            with pytest.raises(MFAPreconditionError):
                await registry.add_device(profile.id, signals)
