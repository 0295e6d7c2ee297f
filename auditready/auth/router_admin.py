"""Administrative MFA endpoints."""
from fastapi import APIRouter, Depends, status

from .admin_reset import AdminMFAResetService
from .dependencies import AuthContext, get_auth_context, get_admin_reset_service
from .schemas_mfa import AdminMFAResetRequest, AdminMFAResetResponse

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/users/{user_id}/mfa/reset",
    response_model=AdminMFAResetResponse,
    status_code=status.HTTP_200_OK
)
async def reset_user_mfa(
    user_id: str,
    request_data: AdminMFAResetRequest,
    ctx: AuthContext = Depends(get_auth_context),
    reset_service: AdminMFAResetService = Depends(get_admin_reset_service)
):
    """
    Reset a user's MFA.

    System admins only. Removes every factor, recovery code and trusted
    device of the target user. Irreversible, rate limited and audited
    with the given reason.
    """
    return await reset_service.reset_user_mfa(ctx.user_id, user_id, request_data.reason)
