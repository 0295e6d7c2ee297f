"""Identity provider MFA API.

``IdentityProvider`` is the contract the MFA core talks to. The bundled
``LocalIdentityProvider`` keeps factors, challenges and sessions in the
application database and verifies codes with pyotp.
"""
import asyncio
import io
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Awaitable, List, Optional, TypeVar

import pyotp
import qrcode
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config.settings import (
    MFA_ISSUER_NAME,
    MFA_CHALLENGE_TTL_SECONDS,
    MFA_TOTP_VALID_WINDOW,
    PROVIDER_TIMEOUT_SECONDS,
    SESSION_EXPIRE_HOURS,
)
from ..core.clock import Clock, utcnow, as_utc
from ..core.logging import get_logger, mask_identifier
from ..models.mfa import MFAFactor, MFAChallenge
from ..models.profile import Profile
from ..models.session import AuthSession
from .exceptions import (
    ChallengeExpiredError,
    EnrollmentConflictError,
    FactorNotFoundError,
    MFAError,
    NotAuthenticatedError,
    ProviderError,
    ProviderUnavailableError,
    StepUpRequiredError,
)
from .schemas_mfa import MFAChallengeResponse, MFAEnrollResponse, MFAFactorResponse
from .security import encrypt_sensitive_data, decrypt_sensitive_data

logger = get_logger(__name__)

T = TypeVar("T")

AAL1 = "aal1"
AAL2 = "aal2"


def render_qr_png(uri: str) -> bytes:
    """Render a provisioning URI as a PNG QR code."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    img_buffer = io.BytesIO()
    img.save(img_buffer, format='PNG')
    img_buffer.seek(0)
    return img_buffer.read()


async def call_provider(
    operation: str,
    call: Awaitable[T],
    timeout_seconds: float = PROVIDER_TIMEOUT_SECONDS,
    **identifiers
) -> T:
    """Await a provider call with a timeout, logging timing and masked identifiers.

    Typed MFA failures propagate unchanged. A timeout or any other
    exception becomes ``ProviderUnavailableError``, so a transport failure
    can never be mistaken for a verified code.
    """
    context = {key: mask_identifier(value) for key, value in identifiers.items()}
    context["operation"] = operation
    started = time.perf_counter()

    def elapsed_ms() -> float:
        return round((time.perf_counter() - started) * 1000, 1)

    try:
        result = await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        context["elapsed_ms"] = elapsed_ms()
        logger.error("Identity provider call timed out", context)
        raise ProviderUnavailableError(
            "The authentication service did not respond. Please try again."
        ) from e
    except MFAError as e:
        context["elapsed_ms"] = elapsed_ms()
        context["error"] = e.code
        logger.warning("Identity provider rejected request", context)
        raise
    except Exception as e:
        context["elapsed_ms"] = elapsed_ms()
        context["error"] = type(e).__name__
        logger.error("Identity provider call failed", context)
        raise ProviderUnavailableError(
            "The authentication service is unavailable. Please try again."
        ) from e

    context["elapsed_ms"] = elapsed_ms()
    logger.debug("Identity provider call completed", context)
    return result


class IdentityProvider(ABC):
    """MFA operations of the identity provider."""

    @abstractmethod
    async def enroll(self, user_id: str, friendly_name: str) -> MFAEnrollResponse:
        ...

    @abstractmethod
    async def challenge(self, user_id: str, factor_id: str) -> MFAChallengeResponse:
        ...

    @abstractmethod
    async def verify(self, user_id: str, session_id: str, factor_id: str, challenge_id: str, code: str) -> bool:
        """Return True only on a positive confirmation; False for a wrong code."""

    @abstractmethod
    async def list_factors(self, user_id: str) -> List[MFAFactorResponse]:
        ...

    @abstractmethod
    async def unenroll(self, user_id: str, session_id: str, factor_id: str) -> None:
        ...

    @abstractmethod
    async def admin_list_factors(self, user_id: str) -> List[MFAFactorResponse]:
        ...

    @abstractmethod
    async def admin_delete_factor(self, user_id: str, factor_id: str) -> None:
        ...

    @abstractmethod
    async def get_assurance_level(self, session_id: str) -> Optional[str]:
        """Current assurance level of a live session, or None."""

    @abstractmethod
    async def get_provisioning_uri(self, user_id: str, factor_id: str) -> str:
        ...

    @abstractmethod
    async def record_mfa_bypass(self, session_id: str, method: str) -> None:
        """Mark sign-in MFA as satisfied without a live challenge. Does not raise the level."""


class LocalIdentityProvider(IdentityProvider):
    """SQL-backed identity provider using pyotp for TOTP."""

    def __init__(
        self,
        db: Session,
        clock: Clock = utcnow,
        issuer_name: str = MFA_ISSUER_NAME,
        challenge_ttl_seconds: int = MFA_CHALLENGE_TTL_SECONDS,
        valid_window: int = MFA_TOTP_VALID_WINDOW,
    ):
        self.db = db
        self.clock = clock
        self.issuer_name = issuer_name
        self.challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self.valid_window = valid_window

    def _get_profile(self, user_id: str) -> Profile:
        profile = self.db.get(Profile, user_id)
        if not profile:
            raise NotAuthenticatedError("No user found")
        return profile

    def _get_factor(self, user_id: str, factor_id: str) -> MFAFactor:
        factor = self.db.execute(
            select(MFAFactor).where(MFAFactor.id == factor_id, MFAFactor.user_id == user_id)
        ).scalar_one_or_none()
        if not factor:
            raise FactorNotFoundError("MFA factor not found")
        return factor

    def _get_live_session(self, session_id: str) -> Optional[AuthSession]:
        session = self.db.execute(
            select(AuthSession)
            .where(AuthSession.id == session_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not session or session.revoked_at is not None:
            return None
        if as_utc(session.expires_at) <= self.clock():
            return None
        return session

    def _provisioning_uri(self, profile: Profile, secret: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=profile.email, issuer_name=self.issuer_name)

    async def enroll(self, user_id: str, friendly_name: str) -> MFAEnrollResponse:
        """Create an unverified TOTP factor and return its provisioning data."""
        profile = self._get_profile(user_id)

        existing = self.db.execute(
            select(MFAFactor).where(MFAFactor.user_id == user_id)
        ).scalars().all()

        if any(f.status == "verified" for f in existing):
            raise EnrollmentConflictError("MFA is already enabled. Disable it first to reconfigure.")
        if any(f.friendly_name == friendly_name for f in existing):
            raise EnrollmentConflictError(
                f"A factor with the friendly name \"{friendly_name}\" already exists"
            )

        secret = pyotp.random_base32()
        now = self.clock()
        factor = MFAFactor(
            user_id=user_id,
            friendly_name=friendly_name,
            factor_type="totp",
            status="unverified",
            secret_key=encrypt_sensitive_data(secret),
            created_at=now,
            updated_at=now,
        )
        self.db.add(factor)
        self.db.commit()

        return MFAEnrollResponse(
            factor_id=factor.id,
            secret=secret,
            uri=self._provisioning_uri(profile, secret),
            qr_code_url=f"/auth/mfa/qr-code?factor_id={factor.id}",
        )

    async def get_provisioning_uri(self, user_id: str, factor_id: str) -> str:
        """Provisioning URI for a factor still in setup."""
        factor = self._get_factor(user_id, factor_id)
        if factor.status != "unverified":
            raise ProviderError("Provisioning data is only available during enrollment")
        secret = decrypt_sensitive_data(factor.secret_key)
        if not secret:
            raise ProviderError("Failed to decrypt MFA secret")
        return self._provisioning_uri(self._get_profile(user_id), secret)

    async def challenge(self, user_id: str, factor_id: str) -> MFAChallengeResponse:
        factor = self._get_factor(user_id, factor_id)
        now = self.clock()
        challenge = MFAChallenge(
            factor_id=factor.id,
            created_at=now,
            expires_at=now + self.challenge_ttl,
        )
        self.db.add(challenge)
        self.db.commit()
        return MFAChallengeResponse(id=challenge.id, factor_id=factor.id, expires_at=as_utc(challenge.expires_at))

    async def verify(self, user_id: str, session_id: str, factor_id: str, challenge_id: str, code: str) -> bool:
        """Check a code against a challenge and raise the session to aal2 on success."""
        factor = self._get_factor(user_id, factor_id)
        session = self._get_live_session(session_id)
        if not session or session.user_id != user_id:
            raise NotAuthenticatedError("No active session")

        challenge = self.db.get(MFAChallenge, challenge_id)
        if not challenge or challenge.factor_id != factor.id:
            raise ProviderError("MFA challenge not found")

        now = self.clock()
        if challenge.verified_at is not None:
            raise ChallengeExpiredError("MFA challenge has already been used")
        if as_utc(challenge.expires_at) <= now:
            raise ChallengeExpiredError("MFA challenge has expired")

        secret = decrypt_sensitive_data(factor.secret_key)
        if not secret:
            raise ProviderError("Failed to decrypt MFA secret")

        totp = pyotp.TOTP(secret)
        if not totp.verify(code, for_time=now, valid_window=self.valid_window):
            return False

        challenge.verified_at = now
        if factor.status != "verified":
            factor.status = "verified"
            factor.updated_at = now
        session.aal = AAL2
        session.aal2_factor_id = factor.id
        session.aal2_at = now
        self.db.commit()
        return True

    async def list_factors(self, user_id: str) -> List[MFAFactorResponse]:
        factors = self.db.execute(
            select(MFAFactor)
            .where(MFAFactor.user_id == user_id, MFAFactor.factor_type == "totp")
            .order_by(MFAFactor.created_at)
        ).scalars().all()
        return [MFAFactorResponse.model_validate(f) for f in factors]

    async def unenroll(self, user_id: str, session_id: str, factor_id: str) -> None:
        """Remove a factor. Verified factors can only be removed from an aal2 session."""
        factor = self._get_factor(user_id, factor_id)
        if factor.status == "verified":
            session = self._get_live_session(session_id)
            if not session or session.user_id != user_id or session.aal != AAL2:
                raise StepUpRequiredError("AAL2 required to unenroll a verified factor", factor_id=factor.id)
        self.db.delete(factor)
        self.db.commit()

    async def admin_list_factors(self, user_id: str) -> List[MFAFactorResponse]:
        factors = self.db.execute(
            select(MFAFactor).where(MFAFactor.user_id == user_id).order_by(MFAFactor.created_at)
        ).scalars().all()
        return [MFAFactorResponse.model_validate(f) for f in factors]

    async def admin_delete_factor(self, user_id: str, factor_id: str) -> None:
        factor = self._get_factor(user_id, factor_id)
        self.db.delete(factor)
        self.db.commit()

    async def get_assurance_level(self, session_id: str) -> Optional[str]:
        # Re-read from the store; a cached level is never trusted
        session = self._get_live_session(session_id)
        return session.aal if session else None

    def create_session(self, user_id: str) -> AuthSession:
        """Open an aal1 session after primary authentication."""
        now = self.clock()
        session = AuthSession(
            user_id=user_id,
            aal=AAL1,
            created_at=now,
            expires_at=now + timedelta(hours=SESSION_EXPIRE_HOURS),
        )
        self.db.add(session)
        self.db.commit()
        return session

    async def record_mfa_bypass(self, session_id: str, method: str) -> None:
        session = self._get_live_session(session_id)
        if session is None:
            raise NotAuthenticatedError("No active session")
        session.mfa_bypass = method
        self.db.commit()
