"""
Audit event variants emitted by the MFA core.

Each variant names its action and carries only the fields that action
needs; ``details()`` flattens it into the JSON payload stored in
``audit_logs``.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class AuditSeverity(str, Enum):
    """Audit event severity levels"""
    DEFAULT = "default"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditEvent:
    """Base for all audit event variants"""
    action: ClassVar[str] = ""
    resource_type: ClassVar[str] = "mfa"
    severity: ClassVar[AuditSeverity] = AuditSeverity.DEFAULT
    status: ClassVar[str] = "success"
    durable: ClassVar[bool] = False

    def details(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    def resource_id(self, actor_id: Optional[str]) -> Optional[str]:
        return actor_id


@dataclass(frozen=True)
class EnrollmentStarted(AuditEvent):
    action: ClassVar[str] = "mfa_enrollment_started"
    durable: ClassVar[bool] = True
    friendly_name: str
    factor_type: str = "totp"


@dataclass(frozen=True)
class EnrollmentFailed(AuditEvent):
    action: ClassVar[str] = "mfa_enrollment_failed"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    error: str


@dataclass(frozen=True)
class MFAEnabled(AuditEvent):
    action: ClassVar[str] = "enable_mfa"
    durable: ClassVar[bool] = True
    factor_id: str
    mfa_method: str = "authenticator"
    verification_method: str = "totp"


@dataclass(frozen=True)
class VerificationSucceeded(AuditEvent):
    action: ClassVar[str] = "mfa_verification_success"
    factor_id: str
    method: str = "totp"


@dataclass(frozen=True)
class VerificationFailed(AuditEvent):
    action: ClassVar[str] = "mfa_verification_failed"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    factor_id: str
    error: str


@dataclass(frozen=True)
class RepeatedVerificationFailure(AuditEvent):
    action: ClassVar[str] = "mfa_verification_failed_multiple"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    durable: ClassVar[bool] = True
    factor_id: str
    failure_count: int
    method: str = "totp"


@dataclass(frozen=True)
class VerificationRateLimited(AuditEvent):
    action: ClassVar[str] = "mfa_rate_limited"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    subject: str
    retry_after: Optional[int] = None


@dataclass(frozen=True)
class MFADisabled(AuditEvent):
    action: ClassVar[str] = "disable_mfa"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    durable: ClassVar[bool] = True
    factor_id: Optional[str]
    reason: str = "user_requested"
    recovery_codes_deleted: bool = True
    trusted_devices_cleared: bool = True


@dataclass(frozen=True)
class RecoveryCodesGenerated(AuditEvent):
    action: ClassVar[str] = "generate_recovery_codes"
    durable: ClassVar[bool] = True
    count: int
    action_type: str = "created"


@dataclass(frozen=True)
class RecoveryCodesRegenerated(AuditEvent):
    action: ClassVar[str] = "regenerate_recovery_codes"
    durable: ClassVar[bool] = True
    count: int
    action_type: str = "regenerated"
    old_codes_deleted: bool = True


@dataclass(frozen=True)
class RecoveryCodeRegenerationFailed(AuditEvent):
    action: ClassVar[str] = "regenerate_recovery_codes_failed"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    error: str
    remaining_codes: Optional[int]


@dataclass(frozen=True)
class RecoveryCodeUsed(AuditEvent):
    action: ClassVar[str] = "recovery_code_used"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    durable: ClassVar[bool] = True
    remaining_codes: int


@dataclass(frozen=True)
class TrustedDeviceAdded(AuditEvent):
    action: ClassVar[str] = "add_trusted_device"
    durable: ClassVar[bool] = True
    device_id: str
    device_name: str
    expires_at: str


@dataclass(frozen=True)
class TrustedDeviceRemoved(AuditEvent):
    action: ClassVar[str] = "remove_trusted_device"
    durable: ClassVar[bool] = True
    device_id: str


@dataclass(frozen=True)
class AdminMFAReset(AuditEvent):
    action: ClassVar[str] = "admin_reset_mfa"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    durable: ClassVar[bool] = True
    target_user_id: str
    reason: str
    factors_removed: int
    recovery_codes_deleted: int

    def resource_id(self, actor_id: Optional[str]) -> Optional[str]:
        return self.target_user_id


@dataclass(frozen=True)
class AdminMFAResetDenied(AuditEvent):
    action: ClassVar[str] = "admin_reset_mfa_denied"
    severity: ClassVar[AuditSeverity] = AuditSeverity.WARNING
    status: ClassVar[str] = "failure"
    durable: ClassVar[bool] = True
    target_user_id: str
    error: str

    def resource_id(self, actor_id: Optional[str]) -> Optional[str]:
        return self.target_user_id
