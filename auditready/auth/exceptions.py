"""Typed failures raised by the MFA core.

Every subclass carries a message that is safe to show to the end user.
Routers translate them to HTTP responses in one place (see ``main.py``).
"""
from typing import Optional


class MFAError(Exception):
    """Base class for MFA failures."""

    status_code = 400
    code = "mfa_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MFAValidationError(MFAError):
    """Malformed input rejected before any provider call."""

    status_code = 422
    code = "validation_error"


class NotAuthenticatedError(MFAError):
    status_code = 401
    code = "not_authenticated"


class MFAAuthorizationError(MFAError):
    status_code = 403
    code = "forbidden"


class MFAPreconditionError(MFAError):
    """A blocking invariant is not met; the message says what is missing."""

    status_code = 409
    code = "precondition_failed"


class StepUpRequiredError(MFAPreconditionError):
    """The session must reach aal2 through a fresh challenge first."""

    status_code = 403
    code = "step_up_required"

    def __init__(self, message: str = "Verify your authenticator code before disabling MFA", factor_id: Optional[str] = None):
        super().__init__(message)
        self.factor_id = factor_id


class RateLimitedError(MFAError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderError(MFAError):
    """Recoverable identity provider rejection (conflict, bad or expired challenge)."""

    status_code = 400
    code = "provider_error"


class EnrollmentConflictError(ProviderError):
    code = "enrollment_conflict"


class ChallengeExpiredError(ProviderError):
    code = "challenge_expired"


class FactorNotFoundError(ProviderError):
    status_code = 404
    code = "factor_not_found"


class ProviderUnavailableError(ProviderError):
    """Timeout or transport failure. Retryable and never treated as verified."""

    status_code = 503
    code = "provider_unavailable"


class RecoveryCodeError(MFAError):
    status_code = 500
    code = "recovery_code_error"
