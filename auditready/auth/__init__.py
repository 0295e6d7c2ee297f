from .router_mfa import router
from .router_admin import router as admin_router
from .dependencies import AuthContext, get_auth_context
from .mfa_service import MFAFactorService
from .security import create_access_token, verify_token

__all__ = [
    "router",
    "admin_router",
    "AuthContext",
    "get_auth_context",
    "MFAFactorService",
    "create_access_token",
    "verify_token"
]
