"""
Referral Workflow Service Tests

Transitions persisted through the repository, audit calls, optimistic
concurrency and timestamp preservation.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.models.referral import ClientState, WorkflowStatus
from src.services.audit import SYSTEM_ACTOR, AuditService
from src.services.referral_repository import (
    ConcurrencyConflict,
    InMemoryReferralRepository,
    ReferralNotFound,
    SqlReferralRepository,
)
from src.services.referral_workflow import ReferralWorkflowService
from src.services.workflow import InvalidStatusTransition, ReasonRequired

S = WorkflowStatus
NOW = datetime(2026, 3, 10, 12, 0, 0)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_audit():
    return MagicMock(spec=AuditService)


@pytest.fixture
def repo():
    return InMemoryReferralRepository()


@pytest.fixture
def service(repo, mock_audit):
    return ReferralWorkflowService(repo, audit_service=mock_audit)


# =============================================================================
# Transitions
# =============================================================================

class TestTransitionReferral:

    def test_requests_documents(self, service, repo, make_referral):
        referral = repo.add(make_referral())

        updated = service.transition_referral(referral.id, "documents_requested", actor_id="staff-1", now=NOW)

        assert updated.workflow_status == S.DOCUMENTS_REQUESTED
        assert updated.client_state == ClientState.PROSPECTIVE
        assert updated.last_modified_by == "staff-1"
        assert repo.get(referral.id).workflow_status == S.DOCUMENTS_REQUESTED

    def test_audit_failure_does_not_undo_transition(self, service, repo, make_referral, mock_audit):
        referral = repo.add(make_referral())
        mock_audit.log_workflow_transition.side_effect = RuntimeError("audit db down")

        updated = service.transition_referral(referral.id, S.DOCUMENTS_REQUESTED, now=NOW)

        assert updated.workflow_status == S.DOCUMENTS_REQUESTED
        assert repo.get(referral.id).workflow_status == S.DOCUMENTS_REQUESTED
        mock_audit.log_workflow_transition.assert_called_once()

    def test_cannot_skip_to_treatment(self, service, repo, make_referral, mock_audit):
        referral = repo.add(make_referral())

        with pytest.raises(InvalidStatusTransition):
            service.transition_referral(referral.id, S.IN_TREATMENT)

        assert repo.get(referral.id) == referral
        mock_audit.log_workflow_transition.assert_not_called()

    def test_state_change_writes_timestamps(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.PRE_STAGE_REVIEW))

        updated = service.transition_referral(referral.id, S.READY_FOR_ASSIGNMENT, now=NOW)

        assert updated.client_state == ClientState.PENDING
        assert updated.prestage_completed_at == NOW
        assert updated.stage_started_at == NOW

    def test_decline_needs_reason(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.PRE_STAGE_REVIEW))

        with pytest.raises(ReasonRequired):
            service.transition_referral(referral.id, S.DECLINED)

        updated = service.transition_referral(referral.id, S.DECLINED, reason="Outside scope", now=NOW)
        assert updated.client_state == ClientState.INACTIVE
        assert updated.decline_reason == "Outside scope"

    def test_declined_assignment_counts_attempt(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.ASSIGNMENT_OFFERED, matching_attempts=1))

        declined = service.transition_referral(referral.id, S.ASSIGNMENT_DECLINED, now=NOW)
        assert declined.matching_attempts == 2

        rematching = service.transition_referral(referral.id, S.MATCHING_IN_PROGRESS, now=NOW)
        assert rematching.matching_attempts == 2

    def test_unknown_referral(self, service):
        with pytest.raises(ReferralNotFound):
            service.transition_referral("00000000-0000-0000-0000-000000000000", S.CANCELLED)

    def test_audits_transition(self, service, repo, make_referral, mock_audit):
        referral = repo.add(make_referral(S.PRE_STAGE_REVIEW))

        service.transition_referral(referral.id, S.READY_FOR_ASSIGNMENT, actor_id="staff-1", now=NOW)

        mock_audit.log_workflow_transition.assert_called_once_with(
            user_id="staff-1",
            referral_id=referral.id,
            from_status="pre_stage_review",
            to_status="ready_for_assignment",
            details={"from_state": "prospective", "to_state": "pending"},
        )

    def test_works_without_audit_service(self, repo, make_referral):
        referral = repo.add(make_referral())
        updated = ReferralWorkflowService(repo).transition_referral(referral.id, S.CANCELLED, now=NOW)
        assert updated.workflow_status == S.CANCELLED


class TestConcurrency:

    def test_status_changed_between_read_and_write(self, repo, make_referral):
        referral = repo.add(make_referral(S.ASSIGNMENT_OFFERED))
        service = ReferralWorkflowService(repo)

        # Another writer moves the referral after it was read
        real_get = repo.get

        def racing_get(referral_id):
            snapshot = real_get(referral_id)
            repo.update(referral_id, {"workflow_status": "assignment_accepted"})
            return snapshot

        repo.get = racing_get

        with pytest.raises(ConcurrencyConflict):
            service.transition_referral(referral.id, S.ASSIGNMENT_DECLINED)

        assert real_get(referral.id).workflow_status == S.ASSIGNMENT_ACCEPTED
        assert real_get(referral.id).matching_attempts == 0


class TestPreserveTimestamps:

    def test_keeps_existing_first_session(self, service, repo, make_referral):
        scheduled = NOW - timedelta(days=2)
        referral = repo.add(make_referral(S.WAITING_FIRST_SESSION, first_session_at=scheduled))

        updated = service.transition_referral(
            referral.id, S.IN_TREATMENT, now=NOW, preserve_timestamps=True
        )

        assert updated.first_session_at == scheduled
        assert updated.acceptance_completed_at == NOW

    def test_default_overwrites(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.WAITING_FIRST_SESSION, first_session_at=NOW - timedelta(days=2)))
        updated = service.transition_referral(referral.id, S.IN_TREATMENT, now=NOW)
        assert updated.first_session_at == NOW


class TestNextValidStatuses:

    def test_lists_allowed(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.ASSIGNMENT_ACCEPTED))
        assert service.get_next_valid_statuses(referral.id) == [
            S.PACKAGE_EXPORTED, S.CLIENT_CONTACTED, S.DECLINED, S.CANCELLED,
        ]

    def test_terminal_has_none(self, service, repo, make_referral):
        referral = repo.add(make_referral(S.CANCELLED))
        assert service.get_next_valid_statuses(referral.id) == []


# =============================================================================
# SQL-backed end to end
# =============================================================================

class TestWithDatabase:

    def test_transition_and_audit_rows(self, sf, insert_referral):
        referral_id = insert_referral(S.ASSIGNMENT_OFFERED)
        audit = AuditService(session_factory=sf)
        service = ReferralWorkflowService(SqlReferralRepository(sf), audit_service=audit)

        updated = service.transition_referral(referral_id, S.ASSIGNMENT_ACCEPTED, now=NOW)

        assert updated.workflow_status == S.ASSIGNMENT_ACCEPTED
        assert updated.assignment_completed_at.replace(tzinfo=None) == NOW
        trail = audit.get_audit_trail(resource_type="referral", resource_id=referral_id)
        assert len(trail) == 1
        assert trail[0].user_id == SYSTEM_ACTOR
        assert trail[0].details["to_status"] == "assignment_accepted"
