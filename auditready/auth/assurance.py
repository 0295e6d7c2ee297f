"""Assurance-level gate for sensitive MFA operations.

A session is ``aal1`` after primary sign-in and ``aal2`` once a factor
challenge has been verified in it. The level is read from the identity
provider on every check; nothing here caches it.
"""
from typing import Optional

from ..core.logging import get_logger, mask_identifier
from .exceptions import MFAPreconditionError, NotAuthenticatedError, StepUpRequiredError
from .identity_provider import AAL2, IdentityProvider
from .mfa_service import MFAFactorService

logger = get_logger(__name__)


class AssuranceGate:
    """Blocks disable-MFA until the session holds aal2."""

    def __init__(self, provider: IdentityProvider, factor_service: MFAFactorService):
        self.provider = provider
        self.factor_service = factor_service

    async def current_level(self, session_id: str) -> str:
        level = await self.factor_service.call_provider(
            "get_assurance_level", self.provider.get_assurance_level(session_id), session=session_id
        )
        if level is None:
            raise NotAuthenticatedError("Your session has expired. Please sign in again.")
        return level

    async def require_aal2(self, user_id: str, session_id: str, factor_id: Optional[str] = None) -> None:
        """Raise ``StepUpRequiredError`` unless the session is at aal2 right now."""
        level = await self.current_level(session_id)
        if level != AAL2:
            logger.info(
                "Step-up verification required",
                {"user": mask_identifier(user_id), "session": mask_identifier(session_id), "level": level}
            )
            raise StepUpRequiredError(factor_id=factor_id)

    async def _resolve_factor_id(self, user_id: str, factor_id: Optional[str]) -> str:
        if factor_id:
            return factor_id
        factor = await self.factor_service.get_primary_factor(user_id)
        if factor is None:
            raise MFAPreconditionError("MFA is not enabled for this account")
        return factor.id

    async def disable_mfa(self, user_id: str, session_id: str, factor_id: Optional[str] = None) -> int:
        """Disable MFA if the session is at aal2. Returns recovery codes deleted."""
        if not factor_id:
            factor = await self.factor_service.get_primary_factor(user_id)
            if factor is None:
                # A previous disable removed the factor but not the local state
                deleted = await self.factor_service.finish_teardown(user_id)
                if deleted is None:
                    raise MFAPreconditionError("MFA is not enabled for this account")
                return deleted
            factor_id = factor.id
        await self.require_aal2(user_id, session_id, factor_id)
        return await self.factor_service.unenroll_factor(user_id, session_id, factor_id)

    async def step_up_and_disable(
        self, user_id: str, session_id: str, code: str, factor_id: Optional[str] = None
    ) -> Optional[int]:
        """Verify a fresh code, then disable MFA.

        Returns None when the code is wrong; the session stays at aal1.
        """
        factor_id = await self._resolve_factor_id(user_id, factor_id)
        challenge = await self.factor_service.challenge_factor(user_id, factor_id)
        verified = await self.factor_service.verify_challenge(
            user_id, session_id, factor_id, challenge.id, code
        )
        if not verified:
            return None
        return await self.disable_mfa(user_id, session_id, factor_id)
