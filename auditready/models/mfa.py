"""MFA (Multi-Factor Authentication) database models."""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from .base import Base
from ..core.clock import utcnow
import uuid


class MFAFactor(Base):
    """Enrolled TOTP factor owned by the identity provider."""
    __tablename__ = "mfa_factors"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    friendly_name = Column(String, nullable=False)
    factor_type = Column(String, nullable=False, default="totp")
    status = Column(String, nullable=False, default="unverified")  # 'unverified' or 'verified'
    secret_key = Column(String, nullable=False)  # Encrypted TOTP secret
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    profile = relationship("Profile", back_populates="factors")
    challenges = relationship("MFAChallenge", back_populates="factor", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<MFAFactor(id={self.id}, user_id={self.user_id}, status={self.status})>"


class MFAChallenge(Base):
    """Short-lived challenge that must be satisfied with a TOTP code."""
    __tablename__ = "mfa_challenges"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    factor_id = Column(String, ForeignKey("mfa_factors.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    factor = relationship("MFAFactor", back_populates="challenges")

    def __repr__(self):
        return f"<MFAChallenge(id={self.id}, factor_id={self.factor_id})>"


class RecoveryCode(Base):
    """Single-use backup credential. Only the SHA-256 hash is stored."""
    __tablename__ = "recovery_codes"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    code_hash = Column(String(64), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_recovery_codes_user_used", "user_id", "used"),
    )

    def __repr__(self):
        return f"<RecoveryCode(id={self.id}, user_id={self.user_id}, used={self.used})>"
