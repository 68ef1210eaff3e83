"""
Centralized Audit Service

Structured audit trail for HIPAA compliance. Every PHI export, download,
decryption and deletion, and every referral workflow transition, is recorded
with who, what, when.
"""

from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog

from src.models.audit_log import AuditLog, AuditEventType, AuditAction

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system-automation"


def _to_id(value: Optional[str | UUID]) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class AuditService:
    """
    Centralized audit logging service.

    Persists to the database when a session factory is available, and always
    emits a structlog ``audit_event``.

    Args:
        session_factory: Optional SQLAlchemy session factory for DB persistence.
            When None, audit entries are logged via structlog only.
    """

    def __init__(self, session_factory: Optional[Callable] = None) -> None:
        self._session_factory = session_factory

    def _create_entry(
        self,
        event_type: str,
        user_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str | UUID],
        action: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Create an AuditLog entry, persist to DB if possible, and emit structlog event.

        Args:
            event_type: Category of audit event (e.g. phi_export).
            user_id: Staff id, or SYSTEM_ACTOR for automation.
            resource_type: Type of resource being accessed/modified.
            resource_id: ID of the specific resource.
            action: Action performed (export, read, transition, ...).
            details: Additional non-PHI context as a JSON-serializable dict.

        Returns:
            The created AuditLog ORM instance.
        """
        entry = AuditLog(
            id=uuid4(),
            event_type=event_type,
            user_id=_to_id(user_id),
            resource_type=resource_type,
            resource_id=_to_id(resource_id),
            action=action,
            details=details or {},
        )

        if self._session_factory is not None:
            session = self._session_factory()
            try:
                session.add(entry)
                session.commit()
                session.refresh(entry)
            except Exception:
                session.rollback()
                logger.error(
                    "audit_persist_failed",
                    event_type=event_type,
                    action=action,
                    resource_type=resource_type,
                )
                raise
            finally:
                session.close()

        logger.info(
            "audit_event",
            event_type=event_type,
            user_id=_to_id(user_id),
            resource_type=resource_type,
            resource_id=_to_id(resource_id),
            action=action,
            details=details or {},
        )

        return entry

    def log_package_export(
        self,
        user_id: Optional[str],
        package_id: str | UUID,
        referral_id: str | UUID,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """Log creation of an encrypted intake package."""
        return self._create_entry(
            event_type=AuditEventType.PHI_EXPORT,
            user_id=user_id,
            resource_type="intake_package",
            resource_id=package_id,
            action=AuditAction.EXPORT,
            details={"referral_id": str(referral_id), **(details or {})},
        )

    def log_package_download(
        self,
        user_id: Optional[str],
        package_id: str | UUID,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """Log issuing a download URL or a confirmed download."""
        return self._create_entry(
            event_type=AuditEventType.PHI_DOWNLOAD,
            user_id=user_id,
            resource_type="intake_package",
            resource_id=package_id,
            action=AuditAction.READ,
            details=details,
        )

    def log_package_decrypt(self, user_id: Optional[str], package_id: str | UUID) -> AuditLog:
        return self._create_entry(
            event_type=AuditEventType.PHI_DECRYPT,
            user_id=user_id,
            resource_type="intake_package",
            resource_id=package_id,
            action=AuditAction.DECRYPT,
        )

    def log_package_delete(self, user_id: Optional[str], package_id: str | UUID) -> AuditLog:
        return self._create_entry(
            event_type=AuditEventType.PHI_DELETE,
            user_id=user_id,
            resource_type="intake_package",
            resource_id=package_id,
            action=AuditAction.DELETE,
        )

    def log_workflow_transition(
        self,
        user_id: Optional[str],
        referral_id: str | UUID,
        from_status: str,
        to_status: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLog:
        """Log a referral status change. Reasons are PHI-adjacent and not logged."""
        return self._create_entry(
            event_type=AuditEventType.WORKFLOW_TRANSITION,
            user_id=user_id or SYSTEM_ACTOR,
            resource_type="referral",
            resource_id=referral_id,
            action=AuditAction.TRANSITION,
            details={"from_status": from_status, "to_status": to_status, **(details or {})},
        )

    def get_audit_trail(
        self,
        resource_type: Optional[str] = None,
        resource_id: Optional[str | UUID] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditLog]:
        """
        Query audit entries with optional filters.

        Returns:
            List of matching AuditLog entries, newest first. Empty when no
            session factory is configured.
        """
        if self._session_factory is None:
            return []

        session = self._session_factory()
        try:
            query = session.query(AuditLog)

            if resource_type is not None:
                query = query.filter(AuditLog.resource_type == resource_type)
            if resource_id is not None:
                query = query.filter(AuditLog.resource_id == _to_id(resource_id))
            if user_id is not None:
                query = query.filter(AuditLog.user_id == user_id)

            query = query.order_by(AuditLog.created_at.desc()).limit(limit)
            return query.all()
        finally:
            session.close()
