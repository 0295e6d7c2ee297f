"""Tests for the MFA audit trail."""
import pytest
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from auditready.models.audit import AuditLog
from auditready.services.audit_events import (
    AdminMFAReset,
    AuditSeverity,
    MFAEnabled,
    RecoveryCodeUsed,
    VerificationFailed,
)


class TestAuditEvents:
    def test_details_drop_empty_fields(self):
        event = MFAEnabled(factor_id="f-1")
        assert event.details() == {
            "factor_id": "f-1",
            "mfa_method": "authenticator",
            "verification_method": "totp",
        }

    def test_admin_reset_targets_the_user(self):
        event = AdminMFAReset(target_user_id="u-2", reason="Lost phone", factors_removed=1, recovery_codes_deleted=10)
        assert event.resource_id("admin-1") == "u-2"
        assert MFAEnabled(factor_id="f-1").resource_id("u-1") == "u-1"


class TestAuditLoggingService:
    @pytest.mark.asyncio
    async def test_durable_event_is_stored(self, audit, profile, db, clock):
        audit_id = await audit.record(RecoveryCodeUsed(remaining_codes=4), actor_id=profile.id)

        entry = db.get(AuditLog, audit_id)
        assert entry.action == "recovery_code_used"
        assert entry.resource_type == "mfa"
        assert entry.resource_id == profile.id
        assert entry.severity == "warning"
        assert entry.details == {"remaining_codes": 4}

    @pytest.mark.asyncio
    async def test_operational_event_is_only_logged(self, audit, profile, db):
        with patch("auditready.services.audit_logging_service.logger") as logger:
            audit_id = await audit.record(
                VerificationFailed(factor_id="f-1", error="Invalid verification code"), actor_id=profile.id
            )

        assert audit_id is None
        assert db.execute(select(AuditLog)).first() is None
        logger.warning.assert_called_once()
        message, context = logger.warning.call_args[0]
        assert message == "MFA event: mfa_verification_failed"
        assert context["details"]["factor_id"] == "f-1"
        assert profile.id not in str(context)

    @pytest.mark.asyncio
    async def test_severity_override(self, audit, profile, db):
        audit_id = await audit.record(
            MFAEnabled(factor_id="f-1"), actor_id=profile.id, severity=AuditSeverity.CRITICAL
        )
        assert db.get(AuditLog, audit_id).severity == "critical"

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, audit, profile, db):
        with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("database is locked"))):
            audit_id = await audit.record(MFAEnabled(factor_id="f-1"), actor_id=profile.id)

        assert audit_id is None
        assert db.execute(select(AuditLog)).first() is None

    @pytest.mark.asyncio
    async def test_query_events(self, audit, profile, clock):
        await audit.record(MFAEnabled(factor_id="f-1"), actor_id=profile.id)
        clock.advance(minutes=1)
        await audit.record(RecoveryCodeUsed(remaining_codes=9), actor_id=profile.id)
        await audit.record(RecoveryCodeUsed(remaining_codes=8), actor_id="someone-else")

        events = audit.get_audit_events(user_id=profile.id)
        assert [e.action for e in events] == ["recovery_code_used", "enable_mfa"]

        used = audit.get_audit_events(actions=["recovery_code_used"])
        assert len(used) == 2
