"""
Security Audit Trail for MFA lifecycle and recovery events
Writes every event to the operational log and the compliance subset to audit_logs
"""

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.orm import Session

from auditready.core.clock import Clock, utcnow
from auditready.core.logging import get_logger, mask_identifier
from auditready.models.audit import AuditLog
from auditready.services.audit_events import AuditEvent, AuditSeverity

logger = get_logger(__name__)


class AuditLoggingService:
    """
    Dual-write audit trail: ephemeral operational log plus a durable
    audit_logs row for the compliance-relevant actions.
    """

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def record(
        self,
        event: AuditEvent,
        actor_id: Optional[str] = None,
        severity: Optional[AuditSeverity] = None
    ) -> Optional[str]:
        """
        Record an audit event

        Failures are logged and swallowed so the MFA operation that
        produced the event is never aborted by the audit write.

        Args:
            event: Tagged event variant
            actor_id: Identifier of the user performing the action
            severity: Override the variant's default severity

        Returns:
            Audit log ID for durable events, otherwise None
        """
        severity = severity or event.severity
        details = event.details()

        self._log_operational(event, actor_id, severity, details)

        if not event.durable:
            return None

        try:
            entry = AuditLog(
                user_id=actor_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id(actor_id),
                details=details,
                status=event.status,
                severity=severity.value,
                created_at=self.clock()
            )
            self.db.add(entry)
            self.db.commit()
            return entry.id
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Failed to write audit log: {event.action}",
                {"error": str(e), "actor": mask_identifier(actor_id)}
            )
            return None

    def _log_operational(
        self,
        event: AuditEvent,
        actor_id: Optional[str],
        severity: AuditSeverity,
        details: Dict[str, Any]
    ) -> None:
        context = {
            "action": event.action,
            "actor": mask_identifier(actor_id),
            "status": event.status,
            "details": details
        }
        message = f"MFA event: {event.action}"
        if severity == AuditSeverity.CRITICAL:
            logger.critical(message, context)
        elif severity == AuditSeverity.WARNING:
            logger.warning(message, context)
        else:
            logger.info(message, context)

    def get_audit_events(
        self,
        user_id: Optional[str] = None,
        actions: Optional[Iterable[str]] = None,
        resource_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLog]:
        """Query durable audit events, newest first."""
        query = select(AuditLog)
        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)
        if actions:
            query = query.where(AuditLog.action.in_(list(actions)))
        query = query.order_by(desc(AuditLog.created_at)).limit(limit)
        return list(self.db.execute(query).scalars().all())
