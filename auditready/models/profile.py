"""User profile and role models."""
from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base
from ..core.clock import utcnow
import uuid


class Profile(Base):
    """Application profile for a user authenticated by the identity provider."""
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    mfa_enabled = Column(Boolean, default=False, nullable=False)
    mfa_method = Column(String, nullable=True)  # 'authenticator' when enabled
    trusted_devices = Column(JSON, nullable=True)  # ordered list of device dicts
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    factors = relationship("MFAFactor", back_populates="profile", cascade="all, delete-orphan")
    roles = relationship("SystemRole", back_populates="profile", cascade="all, delete-orphan")

    # Optimistic concurrency for read-modify-write on trusted_devices
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self):
        return f"<Profile(id={self.id}, email={self.email}, mfa_enabled={self.mfa_enabled})>"


class SystemRole(Base):
    """Role assignments checked for privileged operations."""
    __tablename__ = "system_roles"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)  # 'admin'
    granted_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    profile = relationship("Profile", back_populates="roles")

    __table_args__ = (
        UniqueConstraint("user_id", "role", name="uq_system_roles_user_role"),
    )

    def __repr__(self):
        return f"<SystemRole(user_id={self.user_id}, role={self.role})>"
