"""FormTier Audit Service

Records subscription transitions and archival events in
``formtier_audit_logs`` and mirrors them to the application log.
A failed audit write is logged and never fails the operation being audited.
"""

from typing import Optional, Dict, Any, List
import logging

from database import database
from formtier.models.audit import AuditLog, AuditAction, AuditSeverity

logger = logging.getLogger(__name__)


class AuditService:
    """Service for audit logging."""

    def __init__(self, db=None):
        self.db = db

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    async def log(
        self,
        action: AuditAction,
        description: str,
        account_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> Optional[AuditLog]:
        """Create an audit log entry."""
        entry = AuditLog(
            action=action,
            severity=severity,
            description=description,
            account_id=account_id,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
        )

        log_msg = f"[AUDIT] {action.value}: {description}"
        if account_id:
            log_msg += f" (account: {account_id})"

        if severity == AuditSeverity.ERROR:
            logger.error(log_msg)
        elif severity == AuditSeverity.WARNING:
            logger.warning(log_msg)
        elif severity == AuditSeverity.CRITICAL:
            logger.critical(log_msg)
        else:
            logger.info(log_msg)

        try:
            db = self._get_db()
            await db.formtier_audit_logs.insert_one(entry.model_dump())
        except Exception as e:
            logger.error(f"Failed to write audit log {action.value} for {account_id}: {e}")
            return None

        return entry

    async def get_account_history(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        db = self._get_db()
        cursor = db.formtier_audit_logs.find(
            {"account_id": account_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)


audit_service = AuditService()
