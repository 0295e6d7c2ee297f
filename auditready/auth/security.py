"""Bearer tokens issued for identity provider sessions, and TOTP secret encryption."""
from datetime import datetime, timedelta, timezone
from typing import Optional
import base64
import hashlib

from jose import JWTError, jwt
from cryptography.fernet import Fernet, InvalidToken

from ..config.settings import SECRET_KEY, ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, ENCRYPTION_KEY
from ..core.logging import get_logger

logger = get_logger(__name__)


def _build_fernet(key: Optional[str]) -> Fernet:
    """Fernet from a urlsafe base64 key; any other string is stretched with SHA-256."""
    if not key:
        logger.warning("ENCRYPTION_KEY is not set; TOTP secrets will not survive a restart")
        return Fernet(Fernet.generate_key())
    try:
        return Fernet(key.encode())
    except ValueError:
        return Fernet(base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest()))


fernet = _build_fernet(ENCRYPTION_KEY)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token.

    The identity provider issues tokens with ``sub`` (user id) and
    ``sid`` (session id) claims.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """Decode a bearer token; None when the signature or expiry is invalid."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def encrypt_sensitive_data(data: str) -> str:
    if not data:
        return data
    return fernet.encrypt(data.encode()).decode()


def decrypt_sensitive_data(encrypted_data: str) -> str:
    """Decrypt a stored secret. Returns an empty string when the key does not match."""
    if not encrypted_data:
        return encrypted_data
    try:
        return fernet.decrypt(encrypted_data.encode()).decode()
    except InvalidToken:
        logger.error("Stored secret could not be decrypted with the configured key")
        return ""
