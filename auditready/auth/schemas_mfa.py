"""MFA (Multi-Factor Authentication) Pydantic schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime
import re

from ..config.settings import ADMIN_RESET_REASON_MAX_LENGTH


def clean_totp_code(code: str) -> str:
    """Strip everything but digits from a user-typed code and keep at most 6."""
    return re.sub(r"\D", "", code or "")[:6]


def format_recovery_code(code: str) -> str:
    """Normalize a recovery code the way it is hashed."""
    return (code or "").strip().upper()


class TOTPCodeMixin(BaseModel):
    """Accepts '123 456' style input and cleans it to six digits."""
    code: str = Field(..., description="6-digit TOTP code")

    @field_validator('code')
    @classmethod
    def validate_code(cls, v):
        """Validate code format."""
        cleaned = clean_totp_code(v)
        if len(cleaned) != 6:
            raise ValueError('Code must contain 6 digits')
        return cleaned


class MFAFactorResponse(BaseModel):
    """Enrolled second factor as reported by the identity provider."""
    id: str
    friendly_name: str
    factor_type: str = "totp"
    status: str = Field(..., description="'unverified' or 'verified'")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class MFAEnrollRequest(BaseModel):
    """Request to start TOTP enrollment."""
    friendly_name: str = Field("Authenticator App", min_length=1, max_length=100)


class MFAEnrollResponse(BaseModel):
    """Provisioning data returned once during enrollment."""
    factor_id: str
    factor_type: str = "totp"
    secret: str = Field(..., description="Base32 encoded secret key for TOTP")
    uri: str = Field(..., description="otpauth:// provisioning URI")
    qr_code_url: str = Field(..., description="URL for QR code image")

    class Config:
        json_schema_extra = {
            "example": {
                "factor_id": "9b0e...",
                "factor_type": "totp",
                "secret": "JBSWY3DPEHPK3PXP",
                "uri": "otpauth://totp/AuditReady:user@example.com?secret=JBSWY3DPEHPK3PXP&issuer=AuditReady",
                "qr_code_url": "/auth/mfa/qr-code?factor_id=9b0e..."
            }
        }


class MFAVerifyEnrollmentRequest(TOTPCodeMixin):
    """Confirm enrollment with a code from the authenticator app."""
    factor_id: str = Field(..., min_length=1)


class MFAChallengeRequest(BaseModel):
    factor_id: str = Field(..., min_length=1)


class MFAChallengeResponse(BaseModel):
    """Challenge issued for a factor."""
    id: str
    factor_id: str
    expires_at: datetime


class MFAVerifyChallengeRequest(TOTPCodeMixin):
    factor_id: str = Field(..., min_length=1)
    challenge_id: str = Field(..., min_length=1)


class MFAStepUpDisableRequest(TOTPCodeMixin):
    """Verify a fresh code and disable MFA in one call."""
    factor_id: Optional[str] = None


class MFADisableRequest(BaseModel):
    factor_id: Optional[str] = Field(None, description="Defaults to the user's enrolled factor")


class RecoveryCodesResponse(BaseModel):
    """Plaintext recovery codes, returned exactly once."""
    recovery_codes: List[str] = Field(..., description="List of recovery codes")
    codes_count: int = Field(..., description="Number of recovery codes generated")
    expires_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "recovery_codes": ["K7QM2XPA", "9HTRW3ZC"],
                "codes_count": 10,
                "expires_at": "2027-01-15T10:30:00Z"
            }
        }


class RecoveryCodeStatus(BaseModel):
    """Read-only recovery code stock and expiry warnings."""
    remaining: int
    low_stock: bool = Field(..., description="Fewer than the warning threshold remain")
    no_backup_access: bool = Field(..., description="No usable recovery codes remain")
    expiring_count: int = 0
    days_until_expiry: Optional[int] = None


class RecoveryCodeRequest(BaseModel):
    recovery_code: str = Field(..., description="One of the user's recovery codes")

    @field_validator('recovery_code')
    @classmethod
    def validate_recovery_code(cls, v):
        """Validate recovery code format."""
        cleaned = format_recovery_code(v)
        if len(cleaned) < 8:
            raise ValueError('Please enter a valid recovery code')
        return cleaned


class ClientSignals(BaseModel):
    """Browser signals used to name and fingerprint a trusted device."""
    user_agent: Optional[str] = None
    language: Optional[str] = None
    screen_resolution: Optional[str] = Field(None, description="e.g. '1920x1080'")
    timezone_offset: Optional[int] = Field(None, description="Minutes from UTC as reported by the browser")
    hardware_concurrency: Optional[int] = None


class TrustedDeviceResponse(BaseModel):
    id: str
    name: str
    fingerprint: str
    added_at: datetime
    expires_at: datetime
    last_used: datetime
    is_expired: bool = False
    is_current: bool = False


class TrustDeviceRequest(BaseModel):
    duration_days: int = Field(30, ge=1, le=365)
    signals: ClientSignals = Field(default_factory=ClientSignals)


class SignInStartRequest(BaseModel):
    signals: ClientSignals = Field(default_factory=ClientSignals)


class SignInStartResponse(BaseModel):
    """Outcome of starting sign-in MFA."""
    mfa_required: bool
    verified: bool = False
    trusted_device: bool = False
    factor_id: Optional[str] = None
    challenge_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class SignInVerifyRequest(MFAVerifyChallengeRequest):
    trust_device: bool = False
    signals: ClientSignals = Field(default_factory=ClientSignals)


class MFAStatusResponse(BaseModel):
    """Response showing user's MFA status."""
    mfa_enabled: bool
    mfa_method: Optional[str] = None
    factor: Optional[MFAFactorResponse] = None
    assurance_level: Optional[str] = None
    recovery_codes: RecoveryCodeStatus
    trusted_devices: List[TrustedDeviceResponse] = []


class AdminMFAResetRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=ADMIN_RESET_REASON_MAX_LENGTH)

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        """Reason must contain more than whitespace."""
        if not v.strip():
            raise ValueError('A reason is required')
        return v.strip()


class AdminMFAResetResponse(BaseModel):
    target_user_id: str
    factors_removed: int
    recovery_codes_deleted: int
    audit_log_id: Optional[str] = None
