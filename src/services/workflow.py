"""
Referral Workflow State Machine

Pure transition logic for referrals: no I/O, no clock reads unless ``now`` is
omitted. Two layers are tracked together:

- client state (prospective -> pending -> active -> inactive)
- workflow status (27 granular values, each belonging to exactly one state)

The tables below are the single source of truth. ``compute_transition`` is
the only way a status change is computed; persisting the result is the
caller's job (see ReferralWorkflowService).
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional

from src.models.referral import ClientState, WorkflowStatus


S = WorkflowStatus


# =============================================================================
# Errors
# =============================================================================

class WorkflowTransitionError(Exception):
    """Base exception for rejected workflow transitions."""
    pass


class UnknownStatus(WorkflowTransitionError):
    """Status is not part of the workflow tables."""
    pass


class InvalidStatusTransition(WorkflowTransitionError):
    """Target status is not an allowed next status."""

    def __init__(self, current: WorkflowStatus, target: WorkflowStatus):
        self.current = current
        self.target = target
        self.allowed = next_statuses(current)
        super().__init__(f"Invalid status transition: {current.value} -> {target.value}")


class InvalidStateTransition(WorkflowTransitionError):
    """Status change would imply an illegal client-state jump."""
    pass


class ReasonRequired(WorkflowTransitionError):
    """Transition needs a decline or discharge reason."""

    def __init__(self, target: WorkflowStatus, kind: str):
        self.target = target
        self.kind = kind
        super().__init__(
            f"Reason is required for transition to {target.value} ({kind}_reason)"
        )


# =============================================================================
# Tables
# =============================================================================

STATE_STATUS_MAP: Mapping[ClientState, tuple[WorkflowStatus, ...]] = MappingProxyType({
    ClientState.PROSPECTIVE: (
        S.REFERRAL_SUBMITTED,
        S.DOCUMENTS_REQUESTED,
        S.DOCUMENTS_RECEIVED,
        S.INSURANCE_VERIFICATION_PENDING,
        S.INSURANCE_VERIFIED,
        S.INSURANCE_VERIFICATION_FAILED,
        S.PRE_STAGE_REVIEW,
    ),
    ClientState.PENDING: (
        S.READY_FOR_ASSIGNMENT,
        S.MATCHING_IN_PROGRESS,
        S.THERAPIST_IDENTIFIED,
        S.ASSIGNMENT_PENDING,
        S.ASSIGNMENT_OFFERED,
        S.ASSIGNMENT_ACCEPTED,
        S.ASSIGNMENT_DECLINED,
        S.PACKAGE_EXPORTED,
        S.CLIENT_CONTACTED,
        S.INTAKE_SCHEDULED,
        S.INTAKE_COMPLETED,
        S.WAITING_FIRST_SESSION,
    ),
    ClientState.ACTIVE: (
        S.IN_TREATMENT,
        S.TREATMENT_ON_HOLD,
        S.TREATMENT_RESUMED,
    ),
    ClientState.INACTIVE: (
        S.DISCHARGE_PENDING,
        S.DISCHARGED,
        S.REFERRED_OUT,
        S.DECLINED,
        S.CANCELLED,
    ),
})

_STATUS_STATE: Mapping[WorkflowStatus, ClientState] = MappingProxyType({
    status: state
    for state, statuses in STATE_STATUS_MAP.items()
    for status in statuses
})

VALID_STATE_TRANSITIONS: Mapping[ClientState, frozenset[ClientState]] = MappingProxyType({
    ClientState.PROSPECTIVE: frozenset({ClientState.PENDING, ClientState.INACTIVE}),
    ClientState.PENDING: frozenset({ClientState.ACTIVE, ClientState.INACTIVE}),
    ClientState.ACTIVE: frozenset({ClientState.INACTIVE}),
    ClientState.INACTIVE: frozenset(),
})

_EXITS = (S.DECLINED, S.CANCELLED)

VALID_STATUS_TRANSITIONS: Mapping[WorkflowStatus, tuple[WorkflowStatus, ...]] = MappingProxyType({
    # Pre-staging
    S.REFERRAL_SUBMITTED: (S.DOCUMENTS_REQUESTED, S.PRE_STAGE_REVIEW, *_EXITS),
    S.DOCUMENTS_REQUESTED: (S.DOCUMENTS_RECEIVED, S.DOCUMENTS_REQUESTED, *_EXITS),
    S.DOCUMENTS_RECEIVED: (S.INSURANCE_VERIFICATION_PENDING, S.PRE_STAGE_REVIEW, *_EXITS),
    S.INSURANCE_VERIFICATION_PENDING: (
        S.INSURANCE_VERIFIED, S.INSURANCE_VERIFICATION_FAILED, *_EXITS
    ),
    S.INSURANCE_VERIFIED: (S.PRE_STAGE_REVIEW, *_EXITS),
    S.INSURANCE_VERIFICATION_FAILED: (S.REFERRED_OUT, *_EXITS),
    S.PRE_STAGE_REVIEW: (S.READY_FOR_ASSIGNMENT, S.REFERRED_OUT, *_EXITS),
    # Staging
    S.READY_FOR_ASSIGNMENT: (S.MATCHING_IN_PROGRESS, *_EXITS),
    S.MATCHING_IN_PROGRESS: (
        S.THERAPIST_IDENTIFIED, S.MATCHING_IN_PROGRESS, S.REFERRED_OUT, *_EXITS
    ),
    S.THERAPIST_IDENTIFIED: (S.ASSIGNMENT_PENDING, S.MATCHING_IN_PROGRESS, *_EXITS),
    # Assignment
    S.ASSIGNMENT_PENDING: (S.ASSIGNMENT_OFFERED, *_EXITS),
    S.ASSIGNMENT_OFFERED: (S.ASSIGNMENT_ACCEPTED, S.ASSIGNMENT_DECLINED, *_EXITS),
    S.ASSIGNMENT_ACCEPTED: (S.PACKAGE_EXPORTED, S.CLIENT_CONTACTED, *_EXITS),
    S.ASSIGNMENT_DECLINED: (S.MATCHING_IN_PROGRESS, S.REFERRED_OUT, *_EXITS),
    # Acceptance
    S.PACKAGE_EXPORTED: (S.PACKAGE_EXPORTED, S.CLIENT_CONTACTED, *_EXITS),
    S.CLIENT_CONTACTED: (S.INTAKE_SCHEDULED, S.CLIENT_CONTACTED, *_EXITS),
    S.INTAKE_SCHEDULED: (S.INTAKE_COMPLETED, S.INTAKE_SCHEDULED, *_EXITS),
    S.INTAKE_COMPLETED: (S.WAITING_FIRST_SESSION, *_EXITS),
    S.WAITING_FIRST_SESSION: (S.IN_TREATMENT, *_EXITS),
    # Active treatment
    S.IN_TREATMENT: (S.TREATMENT_ON_HOLD, S.DISCHARGE_PENDING, S.DISCHARGED),
    S.TREATMENT_ON_HOLD: (S.TREATMENT_RESUMED, S.DISCHARGE_PENDING, S.DISCHARGED),
    S.TREATMENT_RESUMED: (S.IN_TREATMENT, S.DISCHARGE_PENDING, S.DISCHARGED),
    # Completion
    S.DISCHARGE_PENDING: (S.DISCHARGED,),
    S.DISCHARGED: (),
    S.REFERRED_OUT: (),
    S.DECLINED: (),
    S.CANCELLED: (),
})

# Status -> column stamped with "now" when that status is entered
STATUS_TIMESTAMPS: Mapping[WorkflowStatus, str] = MappingProxyType({
    S.DOCUMENTS_RECEIVED: "documents_received_at",
    S.INSURANCE_VERIFIED: "insurance_verified_at",
    S.INTAKE_COMPLETED: "intake_completed_at",
    S.ASSIGNMENT_PENDING: "assignment_started_at",
    S.ASSIGNMENT_ACCEPTED: "assignment_completed_at",
    S.PACKAGE_EXPORTED: "exported_at",
    S.DISCHARGED: "discharged_at",
})

# Status -> kind of reason it requires
REASON_REQUIRED: Mapping[WorkflowStatus, str] = MappingProxyType({
    S.DECLINED: "decline",
    S.DISCHARGED: "discharge",
})

EXPORT_STATUS = S.PACKAGE_EXPORTED


# =============================================================================
# Queries
# =============================================================================

def coerce_status(status: Any) -> WorkflowStatus:
    """Convert a string to WorkflowStatus, raising UnknownStatus."""
    if isinstance(status, WorkflowStatus):
        return status
    try:
        return WorkflowStatus(status)
    except ValueError:
        raise UnknownStatus(f"Invalid workflow status: {status}") from None


def coerce_state(state: Any) -> ClientState:
    if isinstance(state, ClientState):
        return state
    try:
        return ClientState(state)
    except ValueError:
        raise WorkflowTransitionError(f"Invalid client state: {state}") from None


def state_of(status: Any) -> ClientState:
    """Client state a workflow status belongs to."""
    status = coerce_status(status)
    try:
        return _STATUS_STATE[status]
    except KeyError:
        raise UnknownStatus(f"Workflow status has no client state: {status.value}") from None


def next_statuses(status: Any) -> list[WorkflowStatus]:
    """Allowed next statuses, in table order."""
    status = coerce_status(status)
    if status not in VALID_STATUS_TRANSITIONS:
        raise UnknownStatus(f"Workflow status has no transition entry: {status.value}")
    return list(VALID_STATUS_TRANSITIONS[status])


def is_terminal(status: Any) -> bool:
    return not next_statuses(status)


def is_valid_state_transition(current: ClientState, target: ClientState) -> bool:
    return target in VALID_STATE_TRANSITIONS[current]


def is_valid_status_transition(current: Any, target: Any) -> bool:
    return coerce_status(target) in VALID_STATUS_TRANSITIONS.get(coerce_status(current), ())


def status_label(status: Any) -> str:
    """Human-readable label, e.g. ``"Assignment Accepted"``."""
    return " ".join(word.capitalize() for word in coerce_status(status).value.split("_"))


def phase_name(state: Any) -> str:
    return {
        ClientState.PROSPECTIVE: "Pre-Staging",
        ClientState.PENDING: "Staging & Assignment",
        ClientState.ACTIVE: "Active Treatment",
        ClientState.INACTIVE: "Completed",
    }[coerce_state(state)]


# =============================================================================
# Transition computation
# =============================================================================

@dataclass(frozen=True)
class TransitionResult:
    """Everything a caller must persist to apply one status change."""
    previous_state: ClientState
    previous_status: WorkflowStatus
    new_state: ClientState
    new_status: WorkflowStatus
    timestamp_updates: Mapping[str, datetime] = field(default_factory=dict)
    increment_matching_attempts: bool = False
    required_reason_kind: Optional[str] = None
    decline_reason: Optional[str] = None
    discharge_reason: Optional[str] = None

    @property
    def state_changed(self) -> bool:
        return self.new_state != self.previous_state

    def as_updates(self, matching_attempts: int = 0) -> dict[str, Any]:
        """Column updates for the referral row."""
        updates: dict[str, Any] = {
            "client_state": self.new_state.value,
            "workflow_status": self.new_status.value,
            **self.timestamp_updates,
        }
        if self.increment_matching_attempts:
            updates["matching_attempts"] = (matching_attempts or 0) + 1
        if self.decline_reason is not None:
            updates["decline_reason"] = self.decline_reason
        if self.discharge_reason is not None:
            updates["discharge_reason"] = self.discharge_reason
        return updates


def compute_transition(
    current_state: Any,
    current_status: Any,
    target_status: Any,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Validate a status change and derive its side effects.

    Args:
        current_state: Stored client state.
        current_status: Stored workflow status.
        target_status: Requested workflow status.
        reason: Decline / discharge reason, required for those targets.
        now: Clock override (tests, scheduler).

    Returns:
        TransitionResult describing the new state, status, timestamps and
        counter / reason updates.

    Raises:
        UnknownStatus: A status is not in the tables.
        InvalidStatusTransition: Target not allowed from the current status.
        InvalidStateTransition: Implied state jump is not allowed, or the
            stored state disagrees with the stored status.
        ReasonRequired: Declined / discharged without a reason.
    """
    current_state = coerce_state(current_state)
    current_status = coerce_status(current_status)
    target_status = coerce_status(target_status)

    if state_of(current_status) != current_state:
        raise InvalidStateTransition(
            f"Stored state {current_state.value} does not match status {current_status.value}"
        )

    # Status edge
    if target_status not in next_statuses(current_status):
        raise InvalidStatusTransition(current_status, target_status)

    # Derived state edge
    new_state = state_of(target_status)
    if new_state != current_state and not is_valid_state_transition(current_state, new_state):
        raise InvalidStateTransition(
            f"Invalid state transition: {current_state.value} -> {new_state.value} "
            f"(triggered by status {target_status.value})"
        )

    # Required reasons
    reason_kind = REASON_REQUIRED.get(target_status)
    cleaned_reason = reason.strip() if isinstance(reason, str) else None
    if reason_kind and not cleaned_reason:
        raise ReasonRequired(target_status, reason_kind)

    # Timestamps
    now = now or datetime.utcnow()
    timestamps: dict[str, datetime] = {}
    if current_state == ClientState.PROSPECTIVE and new_state != ClientState.PROSPECTIVE:
        timestamps["prestage_completed_at"] = now
    if new_state == ClientState.PENDING and current_state != ClientState.PENDING:
        timestamps["stage_started_at"] = now
    if new_state == ClientState.ACTIVE and current_state != ClientState.ACTIVE:
        timestamps["first_session_at"] = now
        timestamps["acceptance_completed_at"] = now
    if target_status in STATUS_TIMESTAMPS:
        timestamps[STATUS_TIMESTAMPS[target_status]] = now

    # One matching attempt per declined assignment
    increment = target_status == S.ASSIGNMENT_DECLINED

    return TransitionResult(
        previous_state=current_state,
        previous_status=current_status,
        new_state=new_state,
        new_status=target_status,
        timestamp_updates=MappingProxyType(timestamps),
        increment_matching_attempts=increment,
        required_reason_kind=reason_kind,
        decline_reason=cleaned_reason if reason_kind == "decline" else None,
        discharge_reason=cleaned_reason if reason_kind == "discharge" else None,
    )


def check_tables() -> list[str]:
    """
    Consistency report for the tables: every status has one state and one
    transition entry, and no status edge implies an illegal state jump.
    Returns a list of problems (empty when consistent).
    """
    problems = []
    seen: dict[WorkflowStatus, ClientState] = {}
    for state, statuses in STATE_STATUS_MAP.items():
        for status in statuses:
            if status in seen:
                problems.append(f"{status.value} mapped to {seen[status].value} and {state.value}")
            seen[status] = state
    for status in WorkflowStatus:
        if status not in seen:
            problems.append(f"{status.value} has no client state")
        if status not in VALID_STATUS_TRANSITIONS:
            problems.append(f"{status.value} has no transition entry")
    for source, targets in VALID_STATUS_TRANSITIONS.items():
        for target in targets:
            a, b = seen.get(source), seen.get(target)
            if a and b and a != b and not is_valid_state_transition(a, b):
                problems.append(f"{source.value} -> {target.value} jumps {a.value} -> {b.value}")
    return problems
