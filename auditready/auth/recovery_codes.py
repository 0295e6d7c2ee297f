"""Recovery code vault.

Codes are handed to the caller in plaintext exactly once; only their
SHA-256 digests are persisted. Consumption is a conditional update so a
code validates at most once even under concurrent requests.
"""
import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.settings import (
    RECOVERY_CODE_COUNT,
    RECOVERY_CODE_LIFETIME_DAYS,
    RECOVERY_CODE_LOW_THRESHOLD,
    RECOVERY_CODE_EXPIRY_LOOKAHEAD_DAYS,
)
from ..core.clock import Clock, utcnow, as_utc
from ..core.logging import get_logger, mask_identifier
from ..models.mfa import RecoveryCode
from ..services.audit_events import (
    AuditSeverity,
    RecoveryCodeRegenerationFailed,
    RecoveryCodeUsed,
    RecoveryCodesGenerated,
    RecoveryCodesRegenerated,
)
from ..services.audit_logging_service import AuditLoggingService
from ..services.rate_limiting_service import RateLimitingService, RateLimitType
from .exceptions import MFAValidationError, RateLimitedError, RecoveryCodeError
from .schemas_mfa import RecoveryCodesResponse, RecoveryCodeStatus, format_recovery_code

logger = get_logger(__name__)

# No 0/O/1/I to keep codes readable
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_LENGTH = 8


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> List[str]:
    """Generate ``count`` random codes from the unambiguous alphabet."""
    return [
        ''.join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))
        for _ in range(count)
    ]


def hash_recovery_code(code: str) -> str:
    """SHA-256 hex digest of the trimmed, uppercased code."""
    return hashlib.sha256(format_recovery_code(code).encode()).hexdigest()


class RecoveryCodeVault:
    """Issue, verify and invalidate a user's recovery codes."""

    def __init__(
        self,
        db: Session,
        audit: AuditLoggingService,
        rate_limiter: RateLimitingService,
        clock: Clock = utcnow,
        batch_size: int = RECOVERY_CODE_COUNT,
        lifetime_days: int = RECOVERY_CODE_LIFETIME_DAYS,
    ):
        self.db = db
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.batch_size = batch_size
        self.lifetime = timedelta(days=lifetime_days)

    def _active_codes_query(self, user_id: str):
        return select(RecoveryCode).where(
            RecoveryCode.user_id == user_id,
            RecoveryCode.used.is_(False),
            RecoveryCode.expires_at > self.clock(),
        )

    def _active_codes(self, user_id: str) -> List[RecoveryCode]:
        return list(self.db.execute(self._active_codes_query(user_id)).scalars().all())

    def count_remaining(self, user_id: str) -> int:
        """Number of unused, unexpired codes."""
        return self.db.execute(
            select(func.count()).select_from(self._active_codes_query(user_id).subquery())
        ).scalar_one()

    def _replace_batch(self, user_id: str) -> Tuple[List[str], RecoveryCodesResponse]:
        # Generate first, then delete and insert in one transaction
        codes = generate_recovery_codes(self.batch_size)
        now = self.clock()
        expires_at = now + self.lifetime
        rows = [
            RecoveryCode(
                user_id=user_id,
                code_hash=hash_recovery_code(code),
                used=False,
                expires_at=expires_at,
                created_at=now,
            )
            for code in codes
        ]

        self.db.execute(delete(RecoveryCode).where(RecoveryCode.user_id == user_id))
        self.db.add_all(rows)
        self.db.commit()

        return codes, RecoveryCodesResponse(
            recovery_codes=codes,
            codes_count=len(codes),
            expires_at=expires_at,
        )

    async def generate_and_store(self, user_id: str) -> RecoveryCodesResponse:
        """Issue the initial batch when MFA is enabled."""
        try:
            codes, response = self._replace_batch(user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to generate recovery codes", {"user": mask_identifier(user_id), "error": str(e)})
            raise RecoveryCodeError("Failed to generate recovery codes") from e

        await self.audit.record(RecoveryCodesGenerated(count=len(codes)), actor_id=user_id)
        return response

    async def regenerate(self, user_id: str) -> RecoveryCodesResponse:
        """Invalidate every existing code (used or not) and issue a fresh batch."""
        try:
            codes, response = self._replace_batch(user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            try:
                remaining = self.count_remaining(user_id)
            except SQLAlchemyError:
                self.db.rollback()
                remaining = None

            # Unknown stock is treated like an empty one
            severity = AuditSeverity.WARNING if remaining else AuditSeverity.CRITICAL
            if not remaining:
                logger.critical(
                    "Recovery code regeneration failed and the user may have no recovery codes",
                    {"user": mask_identifier(user_id), "remaining": remaining, "error": str(e)}
                )
            await self.audit.record(
                RecoveryCodeRegenerationFailed(error=str(e), remaining_codes=remaining),
                actor_id=user_id,
                severity=severity,
            )
            raise RecoveryCodeError("Failed to regenerate recovery codes") from e

        await self.audit.record(RecoveryCodesRegenerated(count=len(codes)), actor_id=user_id)
        return response

    def _consume(self, code_id: str) -> bool:
        """Mark a code used only if it is still unused. Returns False if another request won."""
        result = self.db.execute(
            update(RecoveryCode)
            .where(RecoveryCode.id == code_id, RecoveryCode.used.is_(False))
            .values(used=True, used_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _match(self, candidate: str, codes: List[RecoveryCode]) -> Optional[RecoveryCode]:
        candidate_hash = hash_recovery_code(candidate)
        matched = None
        for code in codes:
            if hmac.compare_digest(candidate_hash, code.code_hash) and matched is None:
                matched = code
        return matched

    async def verify_code(self, user_id: str, candidate: str) -> bool:
        """Consume a recovery code. Returns False for unknown, used or expired codes."""
        if not candidate or not candidate.strip():
            raise MFAValidationError("Please enter a valid recovery code")

        limit = await self.rate_limiter.check_rate_limit(RateLimitType.RECOVERY_CODE, user_id)
        if not limit.allowed:
            raise RateLimitedError(
                "Too many failed recovery code attempts. Please try again later.",
                retry_after=limit.retry_after,
            )

        matched = self._match(candidate, self._active_codes(user_id))
        if matched is None or not self._consume(matched.id):
            await self.rate_limiter.record_request(RateLimitType.RECOVERY_CODE, user_id)
            logger.warning("Invalid recovery code", {"user": mask_identifier(user_id)})
            return False

        await self.rate_limiter.reset_rate_limit(RateLimitType.RECOVERY_CODE, user_id)
        remaining = self.count_remaining(user_id)
        await self.audit.record(RecoveryCodeUsed(remaining_codes=remaining), actor_id=user_id)
        return True

    def get_status(
        self,
        user_id: str,
        lookahead_days: int = RECOVERY_CODE_EXPIRY_LOOKAHEAD_DAYS,
        low_threshold: int = RECOVERY_CODE_LOW_THRESHOLD,
    ) -> RecoveryCodeStatus:
        """Remaining stock plus codes expiring within the lookahead window."""
        now = self.clock()
        active = self._active_codes(user_id)
        horizon = now + timedelta(days=lookahead_days)
        expiring = [code for code in active if as_utc(code.expires_at) <= horizon]

        days_until_expiry = None
        if expiring:
            soonest = min(as_utc(code.expires_at) for code in expiring)
            days_until_expiry = (soonest - now).days

        return RecoveryCodeStatus(
            remaining=len(active),
            low_stock=len(active) < low_threshold,
            no_backup_access=len(active) == 0,
            expiring_count=len(expiring),
            days_until_expiry=days_until_expiry,
        )

    def delete_all(self, user_id: str, commit: bool = True) -> int:
        """Delete every code for the user. Returns the number removed."""
        result = self.db.execute(delete(RecoveryCode).where(RecoveryCode.user_id == user_id))
        if commit:
            self.db.commit()
        return result.rowcount
