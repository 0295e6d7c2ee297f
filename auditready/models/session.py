"""Authenticated session models tracking assurance level."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from .base import Base
from ..core.clock import utcnow
import uuid


class AuthSession(Base):
    """Session issued after primary authentication."""
    __tablename__ = "auth_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    # 'aal1' (primary credential) or 'aal2' (primary + factor challenge)
    aal = Column(String(4), nullable=False, default="aal1")
    aal2_factor_id = Column(String, nullable=True)
    aal2_at = Column(DateTime(timezone=True), nullable=True)

    # Sign-in MFA satisfied without a live challenge: 'trusted_device' or 'recovery_code'
    mfa_bypass = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_auth_sessions_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<AuthSession(id={self.id}, user_id={self.user_id}, aal={self.aal})>"
