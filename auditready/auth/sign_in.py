"""Second step of sign-in: trusted device, live challenge or recovery code."""
from typing import Optional, Tuple

from ..config.settings import TRUSTED_DEVICE_DAYS
from ..core.logging import get_logger, mask_identifier
from .exceptions import MFAPreconditionError
from .identity_provider import IdentityProvider
from .mfa_service import MFAFactorService
from .profiles import load_profile
from .recovery_codes import RecoveryCodeVault
from .schemas_mfa import ClientSignals, SignInStartResponse
from .trusted_devices import TrustedDevice, TrustedDeviceRegistry, generate_device_fingerprint

logger = get_logger(__name__)

BYPASS_TRUSTED_DEVICE = "trusted_device"
BYPASS_RECOVERY_CODE = "recovery_code"


class SignInMFAFlow:
    def __init__(
        self,
        provider: IdentityProvider,
        factor_service: MFAFactorService,
        device_registry: TrustedDeviceRegistry,
        recovery_vault: RecoveryCodeVault,
        device_duration_days: int = TRUSTED_DEVICE_DAYS,
    ):
        self.provider = provider
        self.factor_service = factor_service
        self.device_registry = device_registry
        self.recovery_vault = recovery_vault
        self.device_duration_days = device_duration_days

    async def start(
        self,
        user_id: str,
        session_id: str,
        device_id: Optional[str] = None,
        signals: Optional[ClientSignals] = None,
    ) -> SignInStartResponse:
        """Skip the challenge for a trusted device, otherwise challenge the user's factor.

        ``signals`` only feed the fingerprint written to the log.
        """
        profile = load_profile(self.factor_service.db, user_id)
        if not profile.mfa_enabled:
            return SignInStartResponse(mfa_required=False)

        fingerprint = generate_device_fingerprint(signals) if signals else None

        if self.device_registry.check_device(user_id, device_id, touch=True):
            await self.factor_service.call_provider(
                "record_mfa_bypass",
                self.provider.record_mfa_bypass(session_id, BYPASS_TRUSTED_DEVICE),
                session=session_id,
            )
            logger.info(
                "Sign-in MFA satisfied by trusted device",
                {
                    "user": mask_identifier(user_id),
                    "device": mask_identifier(device_id),
                    "fingerprint": fingerprint,
                }
            )
            return SignInStartResponse(mfa_required=True, verified=True, trusted_device=True)

        factor = await self.factor_service.get_primary_factor(user_id)
        if factor is None:
            raise MFAPreconditionError("No authenticator is enrolled for this account")

        challenge = await self.factor_service.challenge_factor(user_id, factor.id)
        logger.info(
            "Sign-in MFA challenge issued",
            {"user": mask_identifier(user_id), "factor": mask_identifier(factor.id), "fingerprint": fingerprint}
        )
        return SignInStartResponse(
            mfa_required=True,
            factor_id=factor.id,
            challenge_id=challenge.id,
            expires_at=challenge.expires_at,
        )

    async def verify(
        self,
        user_id: str,
        session_id: str,
        factor_id: str,
        challenge_id: str,
        code: str,
        trust_device: bool = False,
        signals: Optional[ClientSignals] = None,
    ) -> Tuple[bool, Optional[TrustedDevice]]:
        """Verify the sign-in challenge and optionally trust this device.

        Returns ``(verified, device)``; ``device`` is set only when a device
        was trusted. A wrong code gives ``(False, None)``.
        """
        verified = await self.factor_service.verify_challenge(
            user_id, session_id, factor_id, challenge_id, code
        )
        if not verified:
            return False, None

        device = None
        if trust_device:
            device = await self.device_registry.add_device(
                user_id, signals or ClientSignals(), self.device_duration_days
            )
        return True, device

    async def use_recovery_code(self, user_id: str, session_id: str, code: str) -> bool:
        """Complete sign-in with a recovery code. The session stays at aal1."""
        if not await self.recovery_vault.verify_code(user_id, code):
            return False

        await self.factor_service.call_provider(
            "record_mfa_bypass",
            self.provider.record_mfa_bypass(session_id, BYPASS_RECOVERY_CODE),
            session=session_id,
        )
        return True
