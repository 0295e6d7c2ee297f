import pytest
import pytest_asyncio
import os
import tempfile
import pyotp
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from auditready.database import enable_sqlite_foreign_keys
from auditready.models.base import Base
from auditready.models.profile import Profile
from auditready.auth.assurance import AssuranceGate
from auditready.auth.identity_provider import LocalIdentityProvider
from auditready.auth.mfa_service import MFAFactorService
from auditready.auth.recovery_codes import RecoveryCodeVault
from auditready.auth.trusted_devices import TrustedDeviceRegistry
from auditready.services.audit_logging_service import AuditLoggingService
from auditready.services.rate_limiting_service import RateLimitingService


class MutableClock:
    """Deterministic clock that tests can move forward."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="function")
def session_factory():
    """Create a temporary database for testing"""
    db_fd, db_path = tempfile.mkstemp()
    test_database_url = f"sqlite:///{db_path}"

    engine = create_engine(test_database_url, connect_args={"check_same_thread": False})
    enable_sqlite_foreign_keys(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.create_all(bind=engine)

    yield TestingSessionLocal

    # Cleanup
    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def redis_mock():
    """Redis client that reports an empty window for every key."""
    client = AsyncMock()
    client.get.return_value = None
    client.zcard.return_value = 0
    client.delete.return_value = 0
    return client


@pytest.fixture
def rate_limiter(redis_mock):
    return RateLimitingService(redis_client=redis_mock)


@pytest.fixture
def audit(db, clock):
    return AuditLoggingService(db, clock)


@pytest.fixture
def provider(db, clock):
    return LocalIdentityProvider(db, clock)


@pytest.fixture
def vault(db, audit, rate_limiter, clock):
    return RecoveryCodeVault(db, audit, rate_limiter, clock)


@pytest.fixture
def registry(db, audit, clock):
    return TrustedDeviceRegistry(db, audit, clock)


@pytest.fixture
def mfa_service(db, provider, audit, rate_limiter, vault, clock):
    return MFAFactorService(db, provider, audit, rate_limiter, vault, clock)


@pytest.fixture
def gate(provider, mfa_service):
    return AssuranceGate(provider, mfa_service)


@pytest.fixture
def profile(db):
    user = Profile(email="owner@example.com", full_name="Receipt Owner")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def auth_session(provider, profile):
    """A fresh aal1 session for the profile."""
    return provider.create_session(profile.id)


@pytest.fixture
def totp(clock):
    """Current TOTP code for a secret at the test clock's time."""
    def code_for(secret: str) -> str:
        return pyotp.TOTP(secret).at(clock())
    return code_for


@pytest.fixture
def wrong_code(clock):
    """A well-formed code that is outside the accepted window for a secret."""
    def code_for(secret: str) -> str:
        otp = pyotp.TOTP(secret)
        accepted = {otp.at(clock() + timedelta(seconds=offset)) for offset in (-30, 0, 30)}
        return next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)
    return code_for


@pytest_asyncio.fixture
async def enabled_mfa(mfa_service, provider, profile, totp):
    """Enroll and verify a factor from a separate session.

    The ``auth_session`` fixture stays at aal1.
    """
    setup_session = provider.create_session(profile.id)
    enrollment = await mfa_service.enroll(profile.id, "Authenticator App")
    codes = await mfa_service.enable_mfa(
        profile.id, setup_session.id, enrollment.factor_id, totp(enrollment.secret)
    )
    assert codes is not None
    return {
        "factor_id": enrollment.factor_id,
        "secret": enrollment.secret,
        "recovery_codes": codes.recovery_codes,
    }
