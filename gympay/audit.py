"""
Audit Service: security/audit trail for payment events.
"""
import json
import logging
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gympay.models import AuditLog, utcnow

logger = logging.getLogger(__name__)


class AuditService:
    """Fire-and-forget audit sink. A failed write is logged, never raised."""

    @staticmethod
    def record(
        db: Session,
        action: str,
        details: Optional[Dict] = None,
        success: bool = True,
        resource: str = "payments",
        actor_id=None,
        ip_address: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Persist an audit entry.

        Args:
            db: Database session.
            action: Action identifier (e.g. PAYMENT_WEBHOOK_SUCCESS).
            details: JSON-serialisable event details.
            success: Whether the audited action succeeded.
            resource: Resource family the action touched.
            actor_id: Authenticated user behind the action, if any.
            ip_address: Client IP.

        Returns:
            The created AuditLog entry, or None when it could not be stored.
        """
        event = {
            "timestamp": utcnow().isoformat(),
            "action": action,
            "resource": resource,
            "details": details or {},
            "success": success,
        }
        if actor_id is not None:
            event["userId"] = str(actor_id)
        logger.info("[SECURITY AUDIT] %s", json.dumps(event, default=str))

        entry = AuditLog(
            action=action,
            resource=resource,
            details=json.loads(json.dumps(details or {}, default=str)),
            success=success,
            actor_id=str(actor_id) if actor_id is not None else None,
            ip_address=ip_address,
        )
        try:
            db.add(entry)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist audit entry %s", action)
            return None
        return entry

    @staticmethod
    def trail(db: Session, action: Optional[str] = None) -> list[AuditLog]:
        """Audit entries in insertion order, optionally for one action."""
        query = db.query(AuditLog)
        if action:
            query = query.filter(AuditLog.action == action)
        return query.order_by(AuditLog.id.asc()).all()
