from .base import Base
from .profile import Profile, SystemRole
from .mfa import MFAFactor, MFAChallenge, RecoveryCode
from .session import AuthSession
from .audit import AuditLog

__all__ = [
    "Base",
    "Profile",
    "SystemRole",
    "MFAFactor",
    "MFAChallenge",
    "RecoveryCode",
    "AuthSession",
    "AuditLog",
]
