"""Append-only security audit log model."""
from sqlalchemy import Column, String, DateTime, JSON, Index
from .base import Base
from ..core.clock import utcnow
import uuid


class AuditLog(Base):
    """Durable audit record. Rows are inserted, never updated or deleted."""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)  # actor
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    status = Column(String(10), nullable=False, default="success")
    severity = Column(String(10), nullable=False, default="default")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action}, user_id={self.user_id})>"
