"""MFA (Multi-Factor Authentication) factor lifecycle service."""
from typing import Awaitable, List, Optional, TypeVar

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..config.settings import (
    MFA_FAILURE_ALERT_THRESHOLD,
    PROVIDER_TIMEOUT_SECONDS,
)
from ..core.clock import Clock, utcnow
from ..core.logging import get_logger, mask_identifier
from ..models.mfa import RecoveryCode
from ..services.audit_events import (
    EnrollmentFailed,
    EnrollmentStarted,
    MFADisabled,
    MFAEnabled,
    RepeatedVerificationFailure,
    VerificationFailed,
    VerificationRateLimited,
    VerificationSucceeded,
)
from ..services.audit_logging_service import AuditLoggingService
from ..services.rate_limiting_service import RateLimitingService, RateLimitType
from .exceptions import (
    MFAPreconditionError,
    MFAValidationError,
    ProviderError,
    RateLimitedError,
)
from .identity_provider import IdentityProvider, call_provider
from .profiles import load_profile, update_profile
from .recovery_codes import RecoveryCodeVault
from .schemas_mfa import (
    MFAChallengeResponse,
    MFAEnrollResponse,
    MFAFactorResponse,
    MFAStatusResponse,
    RecoveryCodesResponse,
)
from .trusted_devices import to_device_response

logger = get_logger(__name__)

T = TypeVar("T")

MFA_METHOD_AUTHENTICATOR = "authenticator"


def require_totp_code(code: str) -> str:
    """The component boundary only accepts an already cleaned 6-digit string."""
    if not code or len(code) != 6 or not code.isdigit():
        raise MFAValidationError("Please enter a valid 6-digit code")
    return code


def require_factor_id(factor_id: Optional[str]) -> str:
    if not factor_id or not factor_id.strip():
        raise MFAValidationError("Factor ID is required")
    return factor_id


def clear_mfa_state(db: Session, user_id: str) -> int:
    """Clear MFA flags, trusted devices and recovery codes in one commit.

    Returns the number of recovery codes deleted.
    """
    def apply(profile) -> int:
        profile.mfa_enabled = False
        profile.mfa_method = None
        profile.trusted_devices = None
        result = db.execute(delete(RecoveryCode).where(RecoveryCode.user_id == user_id))
        return result.rowcount

    return update_profile(db, user_id, apply)


class MFAFactorService:
    """Service for the TOTP factor lifecycle: enroll, challenge, verify, unenroll."""

    def __init__(
        self,
        db: Session,
        provider: IdentityProvider,
        audit: AuditLoggingService,
        rate_limiter: RateLimitingService,
        recovery_vault: RecoveryCodeVault,
        clock: Clock = utcnow,
        timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
        failure_alert_threshold: int = MFA_FAILURE_ALERT_THRESHOLD,
    ):
        self.db = db
        self.provider = provider
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.recovery_vault = recovery_vault
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.failure_alert_threshold = failure_alert_threshold

    async def call_provider(self, operation: str, call: Awaitable[T], **identifiers) -> T:
        return await call_provider(operation, call, self.timeout_seconds, **identifiers)

    async def _ensure_not_locked(self, user_id: str, factor_id: str) -> None:
        limit = await self.rate_limiter.check_rate_limit(RateLimitType.MFA_VERIFICATION, factor_id)
        if limit.allowed:
            return

        await self.audit.record(
            VerificationRateLimited(subject=factor_id, retry_after=limit.retry_after),
            actor_id=user_id,
        )
        raise RateLimitedError(
            "Too many failed attempts. Please wait before trying again.",
            retry_after=limit.retry_after,
        )

    async def _record_failure(self, user_id: str, factor_id: str, error: str) -> None:
        await self.audit.record(VerificationFailed(factor_id=factor_id, error=error), actor_id=user_id)

        failures = await self.rate_limiter.record_request(
            RateLimitType.MFA_VERIFICATION, factor_id, {"user": mask_identifier(user_id)}
        )
        if failures >= self.failure_alert_threshold:
            await self.audit.record(
                RepeatedVerificationFailure(factor_id=factor_id, failure_count=failures),
                actor_id=user_id,
            )

    async def _record_success(self, user_id: str, factor_id: str) -> None:
        await self.rate_limiter.reset_rate_limit(RateLimitType.MFA_VERIFICATION, factor_id)
        await self.audit.record(VerificationSucceeded(factor_id=factor_id), actor_id=user_id)

    async def enroll(self, user_id: str, friendly_name: str) -> MFAEnrollResponse:
        """Start TOTP enrollment and return the provisioning data."""
        if not friendly_name or not friendly_name.strip():
            raise MFAValidationError("A name for the authenticator is required")

        limit = await self.rate_limiter.check_rate_limit(RateLimitType.MFA_ENROLLMENT, user_id)
        if not limit.allowed:
            raise RateLimitedError(
                "Too many enrollment attempts. Please try again later.",
                retry_after=limit.retry_after,
            )
        await self.rate_limiter.record_request(RateLimitType.MFA_ENROLLMENT, user_id)

        try:
            enrollment = await self.call_provider(
                "enroll", self.provider.enroll(user_id, friendly_name.strip()), user=user_id
            )
        except ProviderError as e:
            await self.audit.record(EnrollmentFailed(error=e.message), actor_id=user_id)
            raise

        await self.audit.record(
            EnrollmentStarted(friendly_name=friendly_name.strip(), factor_type=enrollment.factor_type),
            actor_id=user_id,
        )
        return enrollment

    async def get_provisioning_uri(self, user_id: str, factor_id: str) -> str:
        require_factor_id(factor_id)
        return await self.call_provider(
            "get_provisioning_uri",
            self.provider.get_provisioning_uri(user_id, factor_id),
            user=user_id, factor=factor_id,
        )

    async def verify_enrollment(self, user_id: str, session_id: str, factor_id: str, code: str) -> bool:
        """Confirm a new factor with a code from the authenticator app.

        Issues a challenge and verifies the code against it. On success the
        profile is marked ``mfa_enabled`` with the authenticator method.
        Returns False for a wrong code.
        """
        require_factor_id(factor_id)
        require_totp_code(code)

        challenge = await self.challenge_factor(user_id, factor_id)
        verified = await self.call_provider(
            "verify",
            self.provider.verify(user_id, session_id, factor_id, challenge.id, code),
            user=user_id, factor=factor_id,
        )
        if not verified:
            await self._record_failure(user_id, factor_id, "Invalid verification code during enrollment")
            return False

        def enable(profile):
            profile.mfa_enabled = True
            profile.mfa_method = MFA_METHOD_AUTHENTICATOR

        update_profile(self.db, user_id, enable)

        await self.rate_limiter.reset_rate_limit(RateLimitType.MFA_VERIFICATION, factor_id)
        await self.audit.record(
            MFAEnabled(factor_id=factor_id, mfa_method=MFA_METHOD_AUTHENTICATOR),
            actor_id=user_id,
        )
        return True

    async def enable_mfa(
        self, user_id: str, session_id: str, factor_id: str, code: str
    ) -> Optional[RecoveryCodesResponse]:
        """Verify enrollment and issue the initial recovery code batch.

        Returns None when the code was wrong.
        """
        if not await self.verify_enrollment(user_id, session_id, factor_id, code):
            return None
        return await self.recovery_vault.generate_and_store(user_id)

    async def cancel_enrollment(self, user_id: str, session_id: str, factor_id: str) -> None:
        """Discard a factor that never completed verification."""
        require_factor_id(factor_id)
        factors = await self.list_factors(user_id)
        factor = next((f for f in factors if f.id == factor_id), None)
        if factor is None:
            return
        if factor.status == "verified":
            raise MFAPreconditionError("This authenticator is active. Disable MFA to remove it.")

        await self.call_provider(
            "unenroll", self.provider.unenroll(user_id, session_id, factor_id),
            user=user_id, factor=factor_id,
        )
        logger.info(
            "Unverified MFA factor removed",
            {"user": mask_identifier(user_id), "factor": mask_identifier(factor_id)}
        )

    async def list_factors(self, user_id: str) -> List[MFAFactorResponse]:
        return await self.call_provider("list_factors", self.provider.list_factors(user_id), user=user_id)

    async def get_primary_factor(self, user_id: str) -> Optional[MFAFactorResponse]:
        """The user's verified factor; at most one exists per user.

        Unverified factors left by abandoned enrollments are skipped.
        """
        factors = await self.list_factors(user_id)
        return next((f for f in factors if f.status == "verified"), None)

    async def challenge_factor(self, user_id: str, factor_id: str) -> MFAChallengeResponse:
        require_factor_id(factor_id)
        await self._ensure_not_locked(user_id, factor_id)
        return await self.call_provider(
            "challenge", self.provider.challenge(user_id, factor_id),
            user=user_id, factor=factor_id,
        )

    async def verify_challenge(
        self,
        user_id: str,
        session_id: str,
        factor_id: str,
        challenge_id: str,
        code: str,
    ) -> bool:
        """Verify a code against an issued challenge.

        Returns False for a wrong code. Expired or unknown challenges raise
        ``ProviderError`` so the caller can issue a new one; provider outages
        raise ``ProviderUnavailableError`` and are never treated as verified.
        """
        require_factor_id(factor_id)
        if not challenge_id:
            raise MFAValidationError("Challenge ID is required")
        require_totp_code(code)
        await self._ensure_not_locked(user_id, factor_id)

        verified = await self.call_provider(
            "verify",
            self.provider.verify(user_id, session_id, factor_id, challenge_id, code),
            user=user_id, factor=factor_id, challenge=challenge_id,
        )
        if verified is not True:
            await self._record_failure(user_id, factor_id, "Invalid verification code")
            return False

        await self._record_success(user_id, factor_id)
        return True

    async def unenroll_factor(self, user_id: str, session_id: str, factor_id: str) -> int:
        """Remove the factor and tear down all MFA state.

        The provider refuses to remove a verified factor unless the session
        is at aal2; gating happens in ``AssuranceGate`` before this call.
        The factor goes first because the provider owns the aal2 check. If
        the local teardown then fails, ``finish_teardown`` completes it on
        the next disable request. Returns the number of recovery codes deleted.
        """
        require_factor_id(factor_id)
        await self.call_provider(
            "unenroll", self.provider.unenroll(user_id, session_id, factor_id),
            user=user_id, factor=factor_id,
        )

        try:
            deleted = clear_mfa_state(self.db, user_id)
        except MFAPreconditionError:
            logger.error(
                "MFA factor removed but local MFA state was not cleared",
                {"user": mask_identifier(user_id), "factor": mask_identifier(factor_id)}
            )
            raise MFAPreconditionError("Disabling MFA did not finish. Please try again.")

        await self.rate_limiter.reset_rate_limit(RateLimitType.MFA_VERIFICATION, factor_id)
        await self.audit.record(MFADisabled(factor_id=factor_id), actor_id=user_id)
        logger.info(
            "MFA disabled",
            {"user": mask_identifier(user_id), "recovery_codes_deleted": deleted}
        )
        return deleted

    async def finish_teardown(self, user_id: str) -> Optional[int]:
        """Clear MFA state left behind after the verified factor is already gone.

        Returns the number of recovery codes deleted, or None when the
        profile has nothing to clear.
        """
        if await self.get_primary_factor(user_id) is not None:
            return None
        if not load_profile(self.db, user_id).mfa_enabled:
            return None

        deleted = clear_mfa_state(self.db, user_id)
        await self.audit.record(
            MFADisabled(factor_id=None, reason="teardown_completed"), actor_id=user_id
        )
        logger.warning(
            "Interrupted MFA teardown completed",
            {"user": mask_identifier(user_id), "recovery_codes_deleted": deleted}
        )
        return deleted

    async def get_status(
        self, user_id: str, session_id: Optional[str] = None, current_device_id: Optional[str] = None
    ) -> MFAStatusResponse:
        """MFA flag, the enrolled factor, assurance level, recovery stock and devices."""
        profile = load_profile(self.db, user_id)
        factor = await self.get_primary_factor(user_id)

        assurance_level = None
        if session_id:
            assurance_level = await self.call_provider(
                "get_assurance_level", self.provider.get_assurance_level(session_id), session=session_id
            )

        now = self.clock()
        devices = [
            to_device_response(device, now, current_device_id)
            for device in profile.trusted_devices or []
        ]

        return MFAStatusResponse(
            mfa_enabled=bool(profile.mfa_enabled),
            mfa_method=profile.mfa_method,
            factor=factor,
            assurance_level=assurance_level,
            recovery_codes=self.recovery_vault.get_status(user_id),
            trusted_devices=devices,
        )
