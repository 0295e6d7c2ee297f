"""
Application settings for the AuditReady MFA service.
Values come from the environment (optionally a .env file).
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./auditready.db")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# Tokens
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Fernet key for TOTP secrets at rest; a per-process key is generated when unset (development only)
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")
SESSION_EXPIRE_HOURS = int(os.getenv("SESSION_EXPIRE_HOURS", "24"))

# Identity provider
MFA_ISSUER_NAME = os.getenv("MFA_ISSUER_NAME", "AuditReady")
MFA_CHALLENGE_TTL_SECONDS = int(os.getenv("MFA_CHALLENGE_TTL_SECONDS", "300"))
MFA_TOTP_VALID_WINDOW = int(os.getenv("MFA_TOTP_VALID_WINDOW", "1"))
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

# Recovery codes
RECOVERY_CODE_COUNT = int(os.getenv("RECOVERY_CODE_COUNT", "10"))
RECOVERY_CODE_LIFETIME_DAYS = int(os.getenv("RECOVERY_CODE_LIFETIME_DAYS", "365"))
RECOVERY_CODE_LOW_THRESHOLD = int(os.getenv("RECOVERY_CODE_LOW_THRESHOLD", "3"))
RECOVERY_CODE_EXPIRY_LOOKAHEAD_DAYS = int(os.getenv("RECOVERY_CODE_EXPIRY_LOOKAHEAD_DAYS", "30"))

# Trusted devices
TRUSTED_DEVICE_DAYS = int(os.getenv("TRUSTED_DEVICE_DAYS", "30"))
TRUSTED_DEVICE_COOKIE = os.getenv("TRUSTED_DEVICE_COOKIE", "mfa_device_id")

# Failed attempt handling
MFA_FAILURE_ALERT_THRESHOLD = int(os.getenv("MFA_FAILURE_ALERT_THRESHOLD", "3"))
MFA_MAX_FAILED_ATTEMPTS = int(os.getenv("MFA_MAX_FAILED_ATTEMPTS", "5"))
MFA_FAILURE_WINDOW_SECONDS = int(os.getenv("MFA_FAILURE_WINDOW_SECONDS", "900"))

# Admin
ADMIN_RESET_REASON_MAX_LENGTH = int(os.getenv("ADMIN_RESET_REASON_MAX_LENGTH", "500"))
ADMIN_RESETS_PER_HOUR = int(os.getenv("ADMIN_RESETS_PER_HOUR", "10"))

# Attempt limiter store
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD")
REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "10"))
REDIS_KEY_PREFIX = os.getenv("REDIS_KEY_PREFIX", "auditready:mfa")
