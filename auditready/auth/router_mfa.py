"""MFA (Multi-Factor Authentication) router implementation."""
from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from fastapi.responses import StreamingResponse
from typing import List, Optional
import io

from .schemas_mfa import (
    MFAEnrollRequest, MFAEnrollResponse, MFAVerifyEnrollmentRequest, MFAFactorResponse,
    MFAChallengeRequest, MFAChallengeResponse, MFAVerifyChallengeRequest,
    MFADisableRequest, MFAStepUpDisableRequest, MFAStatusResponse,
    RecoveryCodesResponse, RecoveryCodeStatus, RecoveryCodeRequest,
    TrustDeviceRequest, TrustedDeviceResponse,
    SignInStartRequest, SignInStartResponse, SignInVerifyRequest,
)
from .assurance import AssuranceGate
from .dependencies import (
    AuthContext, get_auth_context, get_clock, get_mfa_service, get_recovery_vault,
    get_device_registry, get_assurance_gate, get_sign_in_flow,
)
from .exceptions import MFAPreconditionError
from .identity_provider import render_qr_png
from .mfa_service import MFAFactorService
from .recovery_codes import RecoveryCodeVault
from .sign_in import SignInMFAFlow
from .trusted_devices import TrustedDevice, TrustedDeviceRegistry, to_device_response
from ..config.settings import TRUSTED_DEVICE_COOKIE
from ..core.clock import Clock

router = APIRouter(prefix="/auth/mfa", tags=["mfa"])

INVALID_CODE_DETAIL = "Invalid verification code. Please try again."


def _set_device_cookie(response: Response, device: TrustedDevice, duration_days: int) -> None:
    response.set_cookie(
        key=TRUSTED_DEVICE_COOKIE,
        value=device["id"],
        max_age=duration_days * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
    )


def _require_mfa_enabled(ctx: AuthContext) -> None:
    if not ctx.profile.mfa_enabled:
        raise MFAPreconditionError("MFA is not enabled for this account")


@router.post("/enroll", response_model=MFAEnrollResponse, status_code=status.HTTP_200_OK)
async def enroll(
    request_data: MFAEnrollRequest,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """
    Start TOTP enrollment for the current user.

    Returns the secret, the otpauth:// URI and the QR code URL. The factor
    stays unverified until confirmed with `/enroll/verify`.
    """
    return await mfa_service.enroll(ctx.user_id, request_data.friendly_name)


@router.get("/qr-code")
async def get_qr_code(
    factor_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """
    Get QR code image for a factor that is still being enrolled.

    Returns a PNG image that can be scanned by authenticator apps
    like Google Authenticator, Authy, or 1Password.
    """
    uri = await mfa_service.get_provisioning_uri(ctx.user_id, factor_id)

    return StreamingResponse(
        io.BytesIO(render_qr_png(uri)),
        media_type="image/png",
        headers={"Content-Disposition": "inline; filename=mfa_qr_code.png"}
    )


@router.post("/enroll/verify", response_model=RecoveryCodesResponse)
async def verify_enrollment(
    request_data: MFAVerifyEnrollmentRequest,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """
    Confirm enrollment with a code from the authenticator app and enable MFA.

    Returns the recovery codes. They are shown exactly once; save them
    in a secure location.
    """
    codes = await mfa_service.enable_mfa(
        ctx.user_id, ctx.session_id, request_data.factor_id, request_data.code
    )
    if codes is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL
        )
    return codes


@router.post("/enroll/cancel", status_code=status.HTTP_200_OK)
async def cancel_enrollment(
    request_data: MFAChallengeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """Discard an enrollment that was never verified."""
    await mfa_service.cancel_enrollment(ctx.user_id, ctx.session_id, request_data.factor_id)
    return {"message": "Enrollment cancelled"}


@router.get("/factors", response_model=List[MFAFactorResponse])
async def list_factors(
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    return await mfa_service.list_factors(ctx.user_id)


@router.post("/challenge", response_model=MFAChallengeResponse)
async def challenge_factor(
    request_data: MFAChallengeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    return await mfa_service.challenge_factor(ctx.user_id, request_data.factor_id)


@router.post("/challenge/verify", status_code=status.HTTP_200_OK)
async def verify_challenge(
    request_data: MFAVerifyChallengeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """
    Verify a code against an issued challenge.

    On success the session is raised to aal2. Rate limited per factor.
    """
    verified = await mfa_service.verify_challenge(
        ctx.user_id, ctx.session_id,
        request_data.factor_id, request_data.challenge_id, request_data.code
    )
    if not verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL
        )
    return {"verified": True, "assurance_level": "aal2"}


@router.get("/status", response_model=MFAStatusResponse)
async def get_mfa_status(
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    mfa_service: MFAFactorService = Depends(get_mfa_service)
):
    """
    Get current MFA status for the user.

    Returns whether MFA is enabled, the enrolled factor, the session's
    assurance level, recovery code stock and trusted devices.
    """
    return await mfa_service.get_status(
        ctx.user_id, ctx.session_id, request.cookies.get(TRUSTED_DEVICE_COOKIE)
    )


@router.get("/recovery-codes/status", response_model=RecoveryCodeStatus)
async def get_recovery_code_status(
    ctx: AuthContext = Depends(get_auth_context),
    vault: RecoveryCodeVault = Depends(get_recovery_vault)
):
    return vault.get_status(ctx.user_id)


@router.post("/recovery-codes/regenerate", response_model=RecoveryCodesResponse)
async def regenerate_recovery_codes(
    ctx: AuthContext = Depends(get_auth_context),
    vault: RecoveryCodeVault = Depends(get_recovery_vault)
):
    """
    Replace every recovery code with a fresh batch.

    All previous codes, used or unused, stop working. Only available when
    MFA is enabled.
    """
    _require_mfa_enabled(ctx)
    return await vault.regenerate(ctx.user_id)


@router.get("/trusted-devices", response_model=List[TrustedDeviceResponse])
async def list_trusted_devices(
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    registry: TrustedDeviceRegistry = Depends(get_device_registry),
    clock: Clock = Depends(get_clock)
):
    now = clock()
    current_device_id = request.cookies.get(TRUSTED_DEVICE_COOKIE)
    return [
        to_device_response(device, now, current_device_id)
        for device in registry.list_devices(ctx.user_id)
    ]


@router.post("/trusted-devices", response_model=TrustedDeviceResponse)
async def trust_device(
    request_data: TrustDeviceRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    registry: TrustedDeviceRegistry = Depends(get_device_registry),
    gate: AssuranceGate = Depends(get_assurance_gate),
    clock: Clock = Depends(get_clock)
):
    """
    Trust the current device so future sign-ins skip the MFA challenge.

    Requires a session that has completed a challenge (aal2).
    """
    _require_mfa_enabled(ctx)
    await gate.require_aal2(ctx.user_id, ctx.session_id)

    device = await registry.add_device(ctx.user_id, request_data.signals, request_data.duration_days)
    _set_device_cookie(response, device, request_data.duration_days)
    return to_device_response(device, clock(), device["id"])


@router.delete("/trusted-devices/{device_id}", status_code=status.HTTP_200_OK)
async def remove_trusted_device(
    device_id: str,
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    registry: TrustedDeviceRegistry = Depends(get_device_registry)
):
    removed = await registry.remove_device(ctx.user_id, device_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Trusted device not found"
        )

    if request.cookies.get(TRUSTED_DEVICE_COOKIE) == device_id:
        response.delete_cookie(TRUSTED_DEVICE_COOKIE)
    return {"message": "Trusted device removed"}


def _disabled_response(response: Response, codes_deleted: int) -> dict:
    response.delete_cookie(TRUSTED_DEVICE_COOKIE)
    return {
        "message": "MFA disabled successfully",
        "mfa_enabled": False,
        "recovery_codes_deleted": codes_deleted
    }


@router.post("/disable", status_code=status.HTTP_200_OK)
async def disable_mfa(
    request_data: MFADisableRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    gate: AssuranceGate = Depends(get_assurance_gate)
):
    """
    Disable MFA for the user.

    Requires an aal2 session. From an aal1 session the request is refused
    with `step_up_required`; verify a code via `/disable/step-up` (or
    `/challenge` + `/challenge/verify`) and retry.

    Removes the factor, all recovery codes and all trusted devices.
    """
    codes_deleted = await gate.disable_mfa(ctx.user_id, ctx.session_id, request_data.factor_id)
    return _disabled_response(response, codes_deleted)


@router.post("/disable/step-up", status_code=status.HTTP_200_OK)
async def step_up_and_disable_mfa(
    request_data: MFAStepUpDisableRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    gate: AssuranceGate = Depends(get_assurance_gate)
):
    """Verify a fresh authenticator code, then disable MFA."""
    codes_deleted = await gate.step_up_and_disable(
        ctx.user_id, ctx.session_id, request_data.code, request_data.factor_id
    )
    if codes_deleted is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL
        )
    return _disabled_response(response, codes_deleted)


@router.post("/sign-in/start", response_model=SignInStartResponse)
async def start_sign_in(
    request_data: SignInStartRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
    flow: SignInMFAFlow = Depends(get_sign_in_flow)
):
    """
    Begin the second sign-in step.

    A valid trusted-device cookie completes it immediately. Otherwise a
    challenge is issued for the user's factor.
    """
    return await flow.start(
        ctx.user_id, ctx.session_id,
        request.cookies.get(TRUSTED_DEVICE_COOKIE),
        signals=request_data.signals,
    )


@router.post("/sign-in/verify", status_code=status.HTTP_200_OK)
async def verify_sign_in(
    request_data: SignInVerifyRequest,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
    flow: SignInMFAFlow = Depends(get_sign_in_flow)
):
    verified, device = await flow.verify(
        ctx.user_id, ctx.session_id,
        request_data.factor_id, request_data.challenge_id, request_data.code,
        trust_device=request_data.trust_device,
        signals=request_data.signals,
    )
    if not verified:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=INVALID_CODE_DETAIL
        )

    trusted_device_id: Optional[str] = None
    if device:
        _set_device_cookie(response, device, flow.device_duration_days)
        trusted_device_id = device["id"]
    return {"verified": True, "assurance_level": "aal2", "trusted_device_id": trusted_device_id}


@router.post("/sign-in/recovery", status_code=status.HTTP_200_OK)
async def sign_in_with_recovery_code(
    request_data: RecoveryCodeRequest,
    ctx: AuthContext = Depends(get_auth_context),
    flow: SignInMFAFlow = Depends(get_sign_in_flow),
    vault: RecoveryCodeVault = Depends(get_recovery_vault)
):
    """
    Complete sign-in with a recovery code.

    Each code works once. The session does not reach aal2, so disabling MFA
    still requires a live authenticator code.
    """
    used = await flow.use_recovery_code(ctx.user_id, ctx.session_id, request_data.recovery_code)
    if not used:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid recovery code. Please try again."
        )
    return {"verified": True, "recovery_codes": vault.get_status(ctx.user_id)}
