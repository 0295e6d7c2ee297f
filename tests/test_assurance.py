"""Tests for the assurance gate and the sign-in MFA step."""
import pytest
from unittest.mock import patch
from sqlalchemy import select

from auditready.auth.exceptions import MFAPreconditionError, NotAuthenticatedError, StepUpRequiredError
from auditready.auth.schemas_mfa import ClientSignals
from auditready.auth.sign_in import BYPASS_RECOVERY_CODE, BYPASS_TRUSTED_DEVICE, SignInMFAFlow
from auditready.auth.trusted_devices import generate_device_fingerprint
from auditready.models.audit import AuditLog
from auditready.models.mfa import RecoveryCode
from auditready.models.profile import Profile
from auditready.models.session import AuthSession


@pytest.fixture
def sign_in(provider, mfa_service, registry, vault):
    return SignInMFAFlow(provider, mfa_service, registry, vault, device_duration_days=30)


def reload_session(db, session_id):
    return db.execute(
        select(AuthSession).where(AuthSession.id == session_id).execution_options(populate_existing=True)
    ).scalar_one()


class TestAssuranceGate:
    @pytest.mark.asyncio
    async def test_disable_requires_step_up(self, gate, mfa_service, registry, profile, auth_session, enabled_mfa, db, totp):
        """Disable at aal1 is refused; after a fresh challenge at aal2 it succeeds."""
        factor_id = enabled_mfa["factor_id"]
        await registry.add_device(profile.id, ClientSignals(user_agent="Firefox"))

        with pytest.raises(StepUpRequiredError) as exc_info:
            await gate.disable_mfa(profile.id, auth_session.id)
        assert exc_info.value.factor_id == factor_id

        db.refresh(profile)
        assert profile.mfa_enabled is True
        assert await mfa_service.list_factors(profile.id)

        challenge = await mfa_service.challenge_factor(profile.id, factor_id)
        assert await mfa_service.verify_challenge(
            profile.id, auth_session.id, factor_id, challenge.id, totp(enabled_mfa["secret"])
        )
        assert await gate.current_level(auth_session.id) == "aal2"

        deleted = await gate.disable_mfa(profile.id, auth_session.id)

        assert deleted == 10
        fresh = db.get(Profile, profile.id)
        db.refresh(fresh)
        assert fresh.mfa_enabled is False
        assert not fresh.trusted_devices
        assert db.execute(select(RecoveryCode).where(RecoveryCode.user_id == profile.id)).first() is None
        assert await mfa_service.list_factors(profile.id) == []

    @pytest.mark.asyncio
    async def test_level_is_read_fresh(self, gate, profile, auth_session, db):
        assert await gate.current_level(auth_session.id) == "aal1"

        # Another process raises the session
        stored = reload_session(db, auth_session.id)
        stored.aal = "aal2"
        db.commit()

        assert await gate.current_level(auth_session.id) == "aal2"

    @pytest.mark.asyncio
    async def test_expired_session_has_no_level(self, gate, auth_session, clock):
        clock.advance(hours=25)

        with pytest.raises(NotAuthenticatedError):
            await gate.current_level(auth_session.id)

    @pytest.mark.asyncio
    async def test_revoked_session_has_no_level(self, gate, auth_session, db, clock):
        stored = reload_session(db, auth_session.id)
        stored.revoked_at = clock()
        db.commit()

        with pytest.raises(NotAuthenticatedError):
            await gate.require_aal2("anyone", auth_session.id)

    @pytest.mark.asyncio
    async def test_abandoned_enrollment_is_ignored(
        self, gate, sign_in, mfa_service, provider, profile, auth_session, db, clock, totp
    ):
        """An unverified factor from an earlier attempt never becomes the primary factor."""
        await mfa_service.enroll(profile.id, "Old phone")
        clock.advance(minutes=5)
        setup_session = provider.create_session(profile.id)
        enrollment = await mfa_service.enroll(profile.id, "New phone")
        assert await mfa_service.enable_mfa(
            profile.id, setup_session.id, enrollment.factor_id, totp(enrollment.secret)
        )

        assert (await mfa_service.get_primary_factor(profile.id)).id == enrollment.factor_id
        started = await sign_in.start(profile.id, auth_session.id)
        assert started.factor_id == enrollment.factor_id

        verified, _ = await sign_in.verify(
            profile.id, auth_session.id, started.factor_id, started.challenge_id, totp(enrollment.secret)
        )
        assert verified is True

        await gate.disable_mfa(profile.id, auth_session.id)

        db.refresh(profile)
        assert profile.mfa_enabled is False
        remaining = await mfa_service.list_factors(profile.id)
        assert [f.status for f in remaining] == ["unverified"]
        assert (await mfa_service.enroll(profile.id, "Another phone")).factor_id

    @pytest.mark.asyncio
    async def test_disable_without_mfa(self, gate, profile, auth_session):
        with pytest.raises(MFAPreconditionError):
            await gate.disable_mfa(profile.id, auth_session.id)

    @pytest.mark.asyncio
    async def test_step_up_and_disable(self, gate, mfa_service, profile, auth_session, enabled_mfa, db, totp):
        deleted = await gate.step_up_and_disable(profile.id, auth_session.id, totp(enabled_mfa["secret"]))

        assert deleted == 10
        db.refresh(profile)
        assert profile.mfa_enabled is False
        actions = [row.action for row in db.execute(select(AuditLog)).scalars().all()]
        assert actions.count("disable_mfa") == 1

    @pytest.mark.asyncio
    async def test_step_up_with_wrong_code(self, gate, mfa_service, profile, auth_session, enabled_mfa, db, wrong_code):
        result = await gate.step_up_and_disable(profile.id, auth_session.id, wrong_code(enabled_mfa["secret"]))

        assert result is None
        assert reload_session(db, auth_session.id).aal == "aal1"
        db.refresh(profile)
        assert profile.mfa_enabled is True


class TestSignInFlow:
    @pytest.mark.asyncio
    async def test_no_mfa_needed_when_disabled(self, sign_in, profile, auth_session):
        result = await sign_in.start(profile.id, auth_session.id)

        assert result.mfa_required is False
        assert result.challenge_id is None

    @pytest.mark.asyncio
    async def test_start_issues_challenge(self, sign_in, profile, auth_session, enabled_mfa):
        result = await sign_in.start(profile.id, auth_session.id)

        assert result.mfa_required is True
        assert result.verified is False
        assert result.factor_id == enabled_mfa["factor_id"]
        assert result.challenge_id

    @pytest.mark.asyncio
    async def test_start_logs_device_fingerprint(self, sign_in, profile, auth_session, enabled_mfa):
        signals = ClientSignals(user_agent="Firefox", language="en-US")

        with patch("auditready.auth.sign_in.logger") as logger:
            await sign_in.start(profile.id, auth_session.id, signals=signals)

        message, context = logger.info.call_args.args
        assert message == "Sign-in MFA challenge issued"
        assert context["fingerprint"] == generate_device_fingerprint(signals)

    @pytest.mark.asyncio
    async def test_verify_and_trust_device(self, sign_in, registry, profile, auth_session, enabled_mfa, db, totp):
        started = await sign_in.start(profile.id, auth_session.id)

        verified, device = await sign_in.verify(
            profile.id, auth_session.id, started.factor_id, started.challenge_id,
            totp(enabled_mfa["secret"]), trust_device=True,
            signals=ClientSignals(user_agent="Mozilla/5.0 Firefox/121.0"),
        )

        assert verified is True
        assert device["name"] == "Firefox"
        assert registry.check_device(profile.id, device["id"]) is True
        assert reload_session(db, auth_session.id).aal == "aal2"

    @pytest.mark.asyncio
    async def test_wrong_code_trusts_nothing(self, sign_in, registry, profile, auth_session, enabled_mfa, wrong_code):
        started = await sign_in.start(profile.id, auth_session.id)

        verified, device = await sign_in.verify(
            profile.id, auth_session.id, started.factor_id, started.challenge_id,
            wrong_code(enabled_mfa["secret"]), trust_device=True,
        )

        assert (verified, device) == (False, None)
        assert registry.list_devices(profile.id) == []

    @pytest.mark.asyncio
    async def test_trusted_device_skips_challenge(self, sign_in, registry, provider, profile, enabled_mfa, db, clock):
        device = await registry.add_device(profile.id, ClientSignals(user_agent="Firefox"), 30)
        clock.advance(days=3)
        new_session = provider.create_session(profile.id)

        result = await sign_in.start(profile.id, new_session.id, device["id"])

        assert result.verified is True
        assert result.trusted_device is True
        assert result.challenge_id is None
        stored = reload_session(db, new_session.id)
        assert stored.mfa_bypass == BYPASS_TRUSTED_DEVICE
        assert stored.aal == "aal1"
        assert registry.list_devices(profile.id)[0]["last_used"] == clock().isoformat()

    @pytest.mark.asyncio
    async def test_expired_device_gets_challenged(self, sign_in, registry, provider, profile, enabled_mfa, clock):
        device = await registry.add_device(profile.id, ClientSignals(user_agent="Firefox"), 30)
        clock.advance(days=31)
        new_session = provider.create_session(profile.id)

        result = await sign_in.start(profile.id, new_session.id, device["id"])

        assert result.trusted_device is False
        assert result.challenge_id

    @pytest.mark.asyncio
    async def test_recovery_code_sign_in(self, sign_in, profile, auth_session, enabled_mfa, vault, db):
        code = enabled_mfa["recovery_codes"][0]

        assert await sign_in.use_recovery_code(profile.id, auth_session.id, code) is True
        assert await sign_in.use_recovery_code(profile.id, auth_session.id, code) is False

        stored = reload_session(db, auth_session.id)
        assert stored.mfa_bypass == BYPASS_RECOVERY_CODE
        assert stored.aal == "aal1"
        assert vault.count_remaining(profile.id) == 9
