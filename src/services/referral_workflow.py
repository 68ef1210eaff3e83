"""
Referral Workflow Service

Applies workflow transitions to stored referrals: read the referral, compute
the transition with the pure state machine, persist the result with an
optimistic-concurrency guard, and audit the change.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from src.models.referral import ReferralRead, WorkflowStatus
from src.services.audit import AuditService
from src.services.referral_repository import ReferralRepository
from src.services.workflow import compute_transition, next_statuses

logger = structlog.get_logger(__name__)


class ReferralWorkflowService:
    """
    Produced interface for status changes.

    Args:
        repository: Referral storage.
        audit_service: Optional audit trail. Transitions are still logged via
            structlog when absent.
    """

    def __init__(self, repository: ReferralRepository, audit_service: Optional[AuditService] = None):
        self.repository = repository
        self.audit_service = audit_service

    def transition_referral(
        self,
        referral_id: str | UUID,
        target_status: WorkflowStatus | str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        preserve_timestamps: bool = False,
    ) -> ReferralRead:
        """
        Move a referral to *target_status*.

        Args:
            referral_id: Referral to transition.
            target_status: Requested workflow status.
            reason: Decline / discharge reason where required.
            actor_id: Staff id, or None for automation.
            now: Clock override.
            preserve_timestamps: Keep phase timestamps that are already set
                instead of stamping them with *now* (automation uses this so a
                scheduled first session keeps its recorded time).

        Returns:
            The updated referral snapshot.

        Raises:
            ReferralNotFound: Unknown referral.
            WorkflowTransitionError: Transition rejected; nothing is written.
            ConcurrencyConflict: Status changed between read and write.
        """
        now = now or datetime.utcnow()
        referral = self.repository.get(referral_id)
        result = compute_transition(
            referral.client_state,
            referral.workflow_status,
            target_status,
            reason=reason,
            now=now,
        )

        updates = result.as_updates(referral.matching_attempts)
        if preserve_timestamps:
            for column in result.timestamp_updates:
                if getattr(referral, column) is not None:
                    del updates[column]

        updated = self.repository.update(
            referral.id,
            updates,
            actor_id=actor_id,
            expected_status=referral.workflow_status,
            now=now,
        )

        logger.info(
            "referral_transitioned",
            referral_id=str(referral.id),
            from_status=result.previous_status.value,
            to_status=result.new_status.value,
            state_changed=result.state_changed,
            actor_id=actor_id,
        )
        if self.audit_service is not None:
            # The update is committed; a lost audit row must not undo it
            try:
                self.audit_service.log_workflow_transition(
                    user_id=actor_id,
                    referral_id=referral.id,
                    from_status=result.previous_status.value,
                    to_status=result.new_status.value,
                    details={
                        "from_state": result.previous_state.value,
                        "to_state": result.new_state.value,
                    },
                )
            except Exception as e:
                logger.error(
                    "referral_transition_audit_failed",
                    referral_id=str(referral.id),
                    to_status=result.new_status.value,
                    error_type=type(e).__name__,
                )
        return updated

    def get_next_valid_statuses(self, referral_id: str | UUID) -> list[WorkflowStatus]:
        """Allowed next statuses for the referral's current status."""
        referral = self.repository.get(referral_id)
        return next_statuses(referral.workflow_status)
