"""Tests for the recovery code vault."""
import asyncio
import hashlib
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from auditready.auth.exceptions import MFAValidationError, RateLimitedError, RecoveryCodeError
from auditready.auth.recovery_codes import (
    RECOVERY_CODE_ALPHABET,
    RecoveryCodeVault,
    generate_recovery_codes,
    hash_recovery_code,
)
from auditready.models.audit import AuditLog
from auditready.models.mfa import RecoveryCode
from auditready.services.audit_events import AuditSeverity
from auditready.services.rate_limiting_service import RateLimitResult


class TestCodeGeneration:
    def test_codes_use_unambiguous_alphabet(self):
        codes = generate_recovery_codes(200)

        assert len(codes) == 200
        for code in codes:
            assert len(code) == 8
            assert set(code) <= set(RECOVERY_CODE_ALPHABET)
        assert not set("01IO") & set(RECOVERY_CODE_ALPHABET)

    def test_hash_normalizes_case_and_whitespace(self):
        expected = hashlib.sha256(b"K7QM2XPA").hexdigest()
        assert hash_recovery_code("  k7qm2xpa ") == expected


class TestRecoveryCodeVault:
    @pytest.mark.asyncio
    async def test_generate_stores_only_hashes(self, vault, profile, db):
        response = await vault.generate_and_store(profile.id)

        assert response.codes_count == 10
        stored = db.execute(select(RecoveryCode).where(RecoveryCode.user_id == profile.id)).scalars().all()
        assert len(stored) == 10
        stored_hashes = {row.code_hash for row in stored}
        for code in response.recovery_codes:
            assert code not in stored_hashes
            assert hash_recovery_code(code) in stored_hashes
        assert all(row.used is False for row in stored)

    @pytest.mark.asyncio
    async def test_code_expires_after_one_year(self, vault, profile, clock):
        response = await vault.generate_and_store(profile.id)
        code = response.recovery_codes[0]

        clock.advance(days=366)
        assert await vault.verify_code(profile.id, code) is False

    @pytest.mark.asyncio
    async def test_code_is_accepted_only_once(self, vault, profile):
        """Generate 10, use #7 twice: the second attempt fails."""
        response = await vault.generate_and_store(profile.id)
        seventh = response.recovery_codes[6]

        assert await vault.verify_code(profile.id, seventh) is True
        assert await vault.verify_code(profile.id, seventh) is False
        assert vault.count_remaining(profile.id) == 9

    @pytest.mark.asyncio
    async def test_lowercase_input_matches(self, vault, profile):
        response = await vault.generate_and_store(profile.id)
        assert await vault.verify_code(profile.id, f" {response.recovery_codes[0].lower()} ") is True

    @pytest.mark.asyncio
    async def test_consuming_one_code_leaves_others_untouched(self, vault, profile, db):
        response = await vault.generate_and_store(profile.id)
        await vault.verify_code(profile.id, response.recovery_codes[2])

        used = db.execute(
            select(RecoveryCode).where(RecoveryCode.user_id == profile.id, RecoveryCode.used.is_(True))
        ).scalars().all()
        assert len(used) == 1
        assert used[0].code_hash == hash_recovery_code(response.recovery_codes[2])
        assert used[0].used_at is not None

    @pytest.mark.asyncio
    async def test_regenerate_invalidates_previous_batch(self, vault, profile):
        old = await vault.generate_and_store(profile.id)
        await vault.verify_code(profile.id, old.recovery_codes[0])

        new = await vault.regenerate(profile.id)

        assert new.codes_count == 10
        assert not set(old.recovery_codes) & set(new.recovery_codes)
        for code in old.recovery_codes:
            assert await vault.verify_code(profile.id, code) is False
        for code in new.recovery_codes:
            assert await vault.verify_code(profile.id, code) is True
        for code in new.recovery_codes:
            assert await vault.verify_code(profile.id, code) is False

    @pytest.mark.asyncio
    async def test_regenerate_deletes_used_codes(self, vault, profile, db):
        old = await vault.generate_and_store(profile.id)
        await vault.verify_code(profile.id, old.recovery_codes[0])

        await vault.regenerate(profile.id)

        rows = db.execute(select(RecoveryCode).where(RecoveryCode.user_id == profile.id)).scalars().all()
        assert len(rows) == 10
        assert all(row.used is False for row in rows)

    @pytest.mark.asyncio
    async def test_failed_regeneration_keeps_old_codes(self, vault, profile, db):
        old = await vault.generate_and_store(profile.id)

        with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))):
            with pytest.raises(RecoveryCodeError):
                await vault.regenerate(profile.id)

        assert vault.count_remaining(profile.id) == 10
        assert await vault.verify_code(profile.id, old.recovery_codes[0]) is True

    @pytest.mark.asyncio
    async def test_failed_regeneration_with_database_still_down(self, vault, profile, db, audit):
        await vault.generate_and_store(profile.id)
        failure = OperationalError("SELECT", {}, Exception("database is locked"))

        with patch.object(db, "commit", side_effect=failure), \
                patch.object(vault, "count_remaining", side_effect=failure), \
                patch.object(audit, "record", AsyncMock()) as record:
            with pytest.raises(RecoveryCodeError):
                await vault.regenerate(profile.id)

        event = record.call_args.args[0]
        assert event.action == "regenerate_recovery_codes_failed"
        assert event.remaining_codes is None
        assert record.call_args.kwargs["severity"] == AuditSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_concurrent_use_of_same_code(self, session_factory, audit, rate_limiter, profile, clock):
        """Two sessions match the same code before either writes; only one consumes it."""
        db_a = session_factory()
        db_b = session_factory()
        try:
            vault_a = RecoveryCodeVault(db_a, audit, rate_limiter, clock)
            vault_b = RecoveryCodeVault(db_b, audit, rate_limiter, clock)
            response = await vault_a.generate_and_store(profile.id)
            code = response.recovery_codes[0]

            match_a = vault_a._match(code, vault_a._active_codes(profile.id))
            match_b = vault_b._match(code, vault_b._active_codes(profile.id))
            assert match_a is not None and match_b is not None

            results = [vault_a._consume(match_a.id), vault_b._consume(match_b.id)]
            assert sorted(results) == [False, True]
        finally:
            db_a.close()
            db_b.close()

    @pytest.mark.asyncio
    async def test_concurrent_verify_calls_succeed_once(self, vault, profile):
        response = await vault.generate_and_store(profile.id)
        code = response.recovery_codes[4]

        results = await asyncio.gather(
            vault.verify_code(profile.id, code),
            vault.verify_code(profile.id, code),
        )
        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_empty_code_is_rejected(self, vault, profile):
        with pytest.raises(MFAValidationError):
            await vault.verify_code(profile.id, "   ")

    @pytest.mark.asyncio
    async def test_locked_out_after_repeated_failures(self, vault, profile, rate_limiter):
        response = await vault.generate_and_store(profile.id)
        blocked = RateLimitResult(allowed=False, remaining=0, reset_time=0, retry_after=900)

        with patch.object(rate_limiter, "check_rate_limit", AsyncMock(return_value=blocked)):
            with pytest.raises(RateLimitedError) as exc_info:
                await vault.verify_code(profile.id, response.recovery_codes[0])

        assert exc_info.value.retry_after == 900
        assert vault.count_remaining(profile.id) == 10

    @pytest.mark.asyncio
    async def test_failures_are_counted(self, vault, profile, rate_limiter):
        await vault.generate_and_store(profile.id)

        with patch.object(rate_limiter, "record_request", AsyncMock(return_value=1)) as record:
            assert await vault.verify_code(profile.id, "ZZZZZZZZ") is False

        record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_use_is_audited_with_remaining_count(self, vault, profile, db):
        response = await vault.generate_and_store(profile.id)
        await vault.verify_code(profile.id, response.recovery_codes[0])

        entry = db.execute(
            select(AuditLog).where(AuditLog.action == "recovery_code_used")
        ).scalar_one()
        assert entry.severity == "warning"
        assert entry.details == {"remaining_codes": 9}
        assert response.recovery_codes[0] not in str(entry.details)


class TestRecoveryCodeStatus:
    @pytest.mark.asyncio
    async def test_low_stock_below_three(self, vault, profile):
        response = await vault.generate_and_store(profile.id)
        for code in response.recovery_codes[:8]:
            await vault.verify_code(profile.id, code)

        status = vault.get_status(profile.id)
        assert status.remaining == 2
        assert status.low_stock is True
        assert status.no_backup_access is False

    @pytest.mark.asyncio
    async def test_no_codes_means_no_backup_access(self, vault, profile):
        status = vault.get_status(profile.id)
        assert status.remaining == 0
        assert status.no_backup_access is True

    @pytest.mark.asyncio
    async def test_expiring_codes_within_lookahead(self, vault, profile, clock):
        await vault.generate_and_store(profile.id)

        assert vault.get_status(profile.id).expiring_count == 0

        clock.advance(days=340)
        status = vault.get_status(profile.id)
        assert status.expiring_count == 10
        assert status.days_until_expiry == 25
        assert status.low_stock is False

    @pytest.mark.asyncio
    async def test_delete_all(self, vault, profile):
        await vault.generate_and_store(profile.id)
        assert vault.delete_all(profile.id) == 10
        assert vault.count_remaining(profile.id) == 0
