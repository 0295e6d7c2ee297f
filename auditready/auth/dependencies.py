from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from .admin_reset import AdminMFAResetService
from .assurance import AssuranceGate
from .identity_provider import LocalIdentityProvider
from .mfa_service import MFAFactorService
from .recovery_codes import RecoveryCodeVault
from .security import verify_token
from .sign_in import SignInMFAFlow
from .trusted_devices import TrustedDeviceRegistry
from ..core.clock import Clock, utcnow, as_utc
from ..database import get_db
from ..models.profile import Profile
from ..models.session import AuthSession
from ..services.audit_logging_service import AuditLoggingService
from ..services.rate_limiting_service import RateLimitingService, get_rate_limiting_service

# Security scheme
security = HTTPBearer()


class AuthContext:
    """The signed-in user and the session their token belongs to."""

    def __init__(self, profile: Profile, session_id: str):
        self.profile = profile
        self.session_id = session_id

    @property
    def user_id(self) -> str:
        return self.profile.id


def get_clock() -> Clock:
    """Clock dependency; overridden in tests to move time."""
    return utcnow


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> AuthContext:
    """Resolve the bearer token's ``sub`` and ``sid`` claims to a live session."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    session_id = payload.get("sid")
    if not user_id or not session_id:
        raise credentials_exception

    session = db.get(AuthSession, session_id)
    if (
        session is None
        or session.user_id != user_id
        or session.revoked_at is not None
        or as_utc(session.expires_at) <= clock()
    ):
        raise credentials_exception

    profile = db.get(Profile, user_id)
    if profile is None:
        raise credentials_exception

    if not profile.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    return AuthContext(profile, session_id)


def get_audit_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> AuditLoggingService:
    return AuditLoggingService(db, clock)


def get_identity_provider(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> LocalIdentityProvider:
    return LocalIdentityProvider(db, clock)


def get_recovery_vault(
    db: Session = Depends(get_db),
    audit: AuditLoggingService = Depends(get_audit_service),
    rate_limiter: RateLimitingService = Depends(get_rate_limiting_service),
    clock: Clock = Depends(get_clock),
) -> RecoveryCodeVault:
    return RecoveryCodeVault(db, audit, rate_limiter, clock)


def get_device_registry(
    db: Session = Depends(get_db),
    audit: AuditLoggingService = Depends(get_audit_service),
    clock: Clock = Depends(get_clock),
) -> TrustedDeviceRegistry:
    return TrustedDeviceRegistry(db, audit, clock)


def get_mfa_service(
    db: Session = Depends(get_db),
    provider: LocalIdentityProvider = Depends(get_identity_provider),
    audit: AuditLoggingService = Depends(get_audit_service),
    rate_limiter: RateLimitingService = Depends(get_rate_limiting_service),
    recovery_vault: RecoveryCodeVault = Depends(get_recovery_vault),
    clock: Clock = Depends(get_clock),
) -> MFAFactorService:
    return MFAFactorService(db, provider, audit, rate_limiter, recovery_vault, clock)


def get_assurance_gate(
    provider: LocalIdentityProvider = Depends(get_identity_provider),
    mfa_service: MFAFactorService = Depends(get_mfa_service),
) -> AssuranceGate:
    return AssuranceGate(provider, mfa_service)


def get_sign_in_flow(
    provider: LocalIdentityProvider = Depends(get_identity_provider),
    mfa_service: MFAFactorService = Depends(get_mfa_service),
    device_registry: TrustedDeviceRegistry = Depends(get_device_registry),
    recovery_vault: RecoveryCodeVault = Depends(get_recovery_vault),
) -> SignInMFAFlow:
    return SignInMFAFlow(provider, mfa_service, device_registry, recovery_vault)


def get_admin_reset_service(
    db: Session = Depends(get_db),
    provider: LocalIdentityProvider = Depends(get_identity_provider),
    audit: AuditLoggingService = Depends(get_audit_service),
    rate_limiter: RateLimitingService = Depends(get_rate_limiting_service),
) -> AdminMFAResetService:
    return AdminMFAResetService(db, provider, audit, rate_limiter)
