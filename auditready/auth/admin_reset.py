"""Administrative MFA reset.

Server-side only. Removes every factor the identity provider holds for a
user and clears the rest of their MFA state, for support-driven account
recovery.
"""
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config.settings import ADMIN_RESET_REASON_MAX_LENGTH, PROVIDER_TIMEOUT_SECONDS
from ..core.logging import get_logger, mask_identifier
from ..models.profile import SystemRole
from ..services.audit_events import AdminMFAReset, AdminMFAResetDenied
from ..services.audit_logging_service import AuditLoggingService
from ..services.rate_limiting_service import RateLimitingService, RateLimitType
from .exceptions import MFAAuthorizationError, MFAValidationError, RateLimitedError
from .identity_provider import IdentityProvider, call_provider
from .mfa_service import clear_mfa_state
from .profiles import load_profile
from .schemas_mfa import AdminMFAResetResponse

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


class AdminMFAResetService:
    """Reset a user's MFA on behalf of a system administrator."""

    def __init__(
        self,
        db: Session,
        provider: IdentityProvider,
        audit: AuditLoggingService,
        rate_limiter: RateLimitingService,
        timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
        reason_max_length: int = ADMIN_RESET_REASON_MAX_LENGTH,
    ):
        self.db = db
        self.provider = provider
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds
        self.reason_max_length = reason_max_length

    def is_system_admin(self, user_id: str) -> bool:
        """Role lookup against ``system_roles``; never trusts token claims."""
        role = self.db.execute(
            select(SystemRole).where(SystemRole.user_id == user_id, SystemRole.role == ADMIN_ROLE)
        ).scalar_one_or_none()
        return role is not None

    def _validate_reason(self, reason: str) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise MFAValidationError("A reason is required to reset MFA")
        if len(reason) > self.reason_max_length:
            raise MFAValidationError(f"Reason must be at most {self.reason_max_length} characters")
        return reason

    async def reset_user_mfa(self, actor_id: str, target_user_id: str, reason: str) -> AdminMFAResetResponse:
        """Remove all factors, recovery codes and trusted devices of ``target_user_id``."""
        if not self.is_system_admin(actor_id):
            await self.audit.record(
                AdminMFAResetDenied(target_user_id=target_user_id, error="Caller is not a system admin"),
                actor_id=actor_id,
            )
            raise MFAAuthorizationError("Admin access required")

        reason = self._validate_reason(reason)

        limit = await self.rate_limiter.check_rate_limit(RateLimitType.ADMIN_MFA_RESET, actor_id)
        if not limit.allowed:
            raise RateLimitedError(
                "Too many MFA resets. Please try again later.",
                retry_after=limit.retry_after,
            )
        await self.rate_limiter.record_request(
            RateLimitType.ADMIN_MFA_RESET, actor_id, {"target": mask_identifier(target_user_id)}
        )

        # Raises NotAuthenticatedError for an unknown target
        load_profile(self.db, target_user_id)

        factors = await call_provider(
            "admin_list_factors",
            self.provider.admin_list_factors(target_user_id),
            self.timeout_seconds,
            target=target_user_id,
        )
        for factor in factors:
            await call_provider(
                "admin_delete_factor",
                self.provider.admin_delete_factor(target_user_id, factor.id),
                self.timeout_seconds,
                target=target_user_id, factor=factor.id,
            )

        codes_deleted = clear_mfa_state(self.db, target_user_id)

        audit_log_id = await self.audit.record(
            AdminMFAReset(
                target_user_id=target_user_id,
                reason=reason,
                factors_removed=len(factors),
                recovery_codes_deleted=codes_deleted,
            ),
            actor_id=actor_id,
        )

        return AdminMFAResetResponse(
            target_user_id=target_user_id,
            factors_removed=len(factors),
            recovery_codes_deleted=codes_deleted,
            audit_log_id=audit_log_id,
        )
