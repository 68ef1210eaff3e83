"""
Workflow Automation

Periodic sweeps run by the scheduler:

- auto-transitions: fixed-priority rules applied through the workflow service
- SLA monitoring: per-phase day targets, warning / critical severity
- document reminders: referrals stuck waiting on documents

Rule conditions and SLA checks are pure functions of a referral snapshot and
``now``; only the sweeps touch the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog

from src.models.base import as_naive_utc
from src.models.referral import ClientState, ReferralRead, WorkflowStatus
from src.services.audit import SYSTEM_ACTOR
from src.services.notifications import (
    NotificationEvent,
    NotificationKind,
    NotificationSink,
    dispatch_notification,
)
from src.services.referral_repository import ConcurrencyConflict, ReferralRepository
from src.services.referral_workflow import ReferralWorkflowService
from src.services.workflow import WorkflowTransitionError

logger = structlog.get_logger(__name__)


SLA_TARGETS = {
    "referral_review": 3,
    "pre_staging": 7,
    "staging_assignment": 5,
    "acceptance": 10,
}
CRITICAL_MULTIPLIER = 1.5

IDLE_TIMEOUT_DAYS = 30
IDLE_DECLINE_REASON = "Automatically declined due to 30 days of inactivity"
DOCUMENT_REMINDER_DAYS = 3


def days_since(timestamp: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days elapsed since *timestamp*, or None when unset."""
    if timestamp is None:
        return None
    return (as_naive_utc(now) - as_naive_utc(timestamp)).days


def _reached(timestamp: Optional[datetime], now: datetime) -> bool:
    return timestamp is not None and as_naive_utc(timestamp) <= as_naive_utc(now)


# ---------------------------------------------------------------------------
# Auto-transition rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AutoTransitionRule:
    """A condition and the status path applied when it holds.

    ``path`` usually has one status; longer paths are applied step by step,
    each step validated by the state machine.
    """
    name: str
    condition: Callable[[ReferralRead, datetime], bool]
    path: tuple[WorkflowStatus, ...]
    reason: Optional[str] = None


def _first_session_reached(referral: ReferralRead, now: datetime) -> bool:
    return (
        referral.workflow_status == WorkflowStatus.WAITING_FIRST_SESSION
        and _reached(referral.first_session_at, now)
    )


def _idle_too_long(referral: ReferralRead, now: datetime) -> bool:
    if referral.client_state == ClientState.INACTIVE:
        return False
    days = days_since(referral.last_modified_at, now)
    return days is not None and days >= IDLE_TIMEOUT_DAYS


def _intake_completed(referral: ReferralRead, now: datetime) -> bool:
    return (
        referral.workflow_status == WorkflowStatus.INTAKE_SCHEDULED
        and _reached(referral.intake_completed_at, now)
    )


AUTO_TRANSITION_RULES: tuple[AutoTransitionRule, ...] = (
    AutoTransitionRule(
        name="first_session_started",
        condition=_first_session_reached,
        path=(WorkflowStatus.IN_TREATMENT,),
    ),
    AutoTransitionRule(
        name="idle_auto_decline",
        condition=_idle_too_long,
        path=(WorkflowStatus.DECLINED,),
        reason=IDLE_DECLINE_REASON,
    ),
    AutoTransitionRule(
        name="intake_completed",
        condition=_intake_completed,
        path=(WorkflowStatus.INTAKE_COMPLETED, WorkflowStatus.WAITING_FIRST_SESSION),
    ),
)


def matching_rules(referral: ReferralRead, now: datetime) -> list[AutoTransitionRule]:
    """Rules whose condition holds, in priority order."""
    return [rule for rule in AUTO_TRANSITION_RULES if rule.condition(referral, now)]


def apply_auto_transitions(
    referral: ReferralRead,
    workflow_service: ReferralWorkflowService,
    now: datetime,
) -> Optional[str]:
    """
    Apply the first matching rule that the state machine accepts.

    A rule whose transition is rejected is logged and the next rule is tried.

    Returns:
        Name of the applied rule, or None.
    """
    for rule in matching_rules(referral, now):
        try:
            for status in rule.path:
                workflow_service.transition_referral(
                    referral.id,
                    status,
                    reason=rule.reason,
                    actor_id=SYSTEM_ACTOR,
                    now=now,
                    preserve_timestamps=True,
                )
        except WorkflowTransitionError as e:
            logger.warning(
                "auto_transition_rejected",
                referral_id=str(referral.id),
                rule=rule.name,
                status=referral.workflow_status.value,
                error=str(e),
            )
            continue
        except ConcurrencyConflict:
            logger.warning("auto_transition_conflict", referral_id=str(referral.id), rule=rule.name)
            return None

        logger.info(
            "auto_transition_applied",
            referral_id=str(referral.id),
            rule=rule.name,
            from_status=referral.workflow_status.value,
            to_status=rule.path[-1].value,
        )
        return rule.name
    return None


@dataclass
class SweepResult:
    checked: int = 0
    transitioned: int = 0
    applied: dict[str, str] = field(default_factory=dict)


def run_auto_transition_sweep(
    repository: ReferralRepository,
    workflow_service: ReferralWorkflowService,
    now: Optional[datetime] = None,
) -> SweepResult:
    """Evaluate the rules against every non-inactive referral."""
    now = now or datetime.utcnow()
    result = SweepResult()
    candidates = [
        r for r in repository.list_all() if r.client_state != ClientState.INACTIVE
    ]
    logger.info("auto_transition_sweep_started", candidates=len(candidates))

    for referral in candidates:
        result.checked += 1
        applied = apply_auto_transitions(referral, workflow_service, now)
        if applied:
            result.transitioned += 1
            result.applied[str(referral.id)] = applied

    logger.info(
        "auto_transition_sweep_completed",
        checked=result.checked,
        transitioned=result.transitioned,
    )
    return result


# ---------------------------------------------------------------------------
# SLA monitoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SLAViolation:
    referral_id: str
    phase: str
    target_days: int
    actual_days: int
    severity: str  # "warning" | "critical"


def _violation(referral: ReferralRead, phase: str, started: Optional[datetime], now: datetime):
    days = days_since(started, now)
    target = SLA_TARGETS[phase]
    if days is None or days <= target:
        return None
    return SLAViolation(
        referral_id=str(referral.id),
        phase=phase,
        target_days=target,
        actual_days=days,
        severity="critical" if days > target * CRITICAL_MULTIPLIER else "warning",
    )


def check_sla_violations(referral: ReferralRead, now: Optional[datetime] = None) -> list[SLAViolation]:
    """
    SLA violations for one referral at *now*. Inactive referrals never violate.

    Phases:
        referral_review     submitted / documents requested, from created_at
        pre_staging         prospective, from prestage_started_at
        staging_assignment  pending and not yet accepted, from stage_started_at
        acceptance          accepted but no first session, from assignment_completed_at
    """
    now = now or datetime.utcnow()
    if referral.client_state == ClientState.INACTIVE:
        return []

    checks = []
    if referral.client_state == ClientState.PROSPECTIVE:
        checks.append(("pre_staging", referral.prestage_started_at))
    if referral.client_state == ClientState.PENDING and referral.assignment_completed_at is None:
        checks.append(("staging_assignment", referral.stage_started_at))
    if (
        referral.client_state == ClientState.PENDING
        and referral.assignment_completed_at is not None
        and referral.first_session_at is None
    ):
        checks.append(("acceptance", referral.assignment_completed_at))
    if referral.workflow_status in (
        WorkflowStatus.REFERRAL_SUBMITTED,
        WorkflowStatus.DOCUMENTS_REQUESTED,
    ):
        checks.append(("referral_review", referral.created_at))

    violations = []
    for phase, started in checks:
        violation = _violation(referral, phase, started, now)
        if violation is not None:
            violations.append(violation)
    return violations


@dataclass
class SlaSweepResult:
    checked: int = 0
    violations: list[SLAViolation] = field(default_factory=list)

    @property
    def critical(self) -> int:
        return sum(1 for v in self.violations if v.severity == "critical")


def run_sla_sweep(
    repository: ReferralRepository,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationSink] = None,
) -> SlaSweepResult:
    """Check every non-inactive referral; critical violations are notified."""
    now = now or datetime.utcnow()
    result = SlaSweepResult()
    for referral in repository.list_all():
        if referral.client_state == ClientState.INACTIVE:
            continue
        result.checked += 1
        result.violations.extend(check_sla_violations(referral, now))

    for violation in result.violations:
        if violation.severity == "critical":
            dispatch_notification(
                notifier,
                NotificationEvent(
                    kind=NotificationKind.SLA_VIOLATION,
                    referral_id=violation.referral_id,
                    details={
                        "phase": violation.phase,
                        "days_elapsed": violation.actual_days,
                        "severity": violation.severity,
                    },
                ),
            )

    logger.info(
        "sla_sweep_completed",
        checked=result.checked,
        violations=len(result.violations),
        critical=result.critical,
    )
    return result


# ---------------------------------------------------------------------------
# Document reminders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentReminder:
    referral_id: str
    days_waiting: int


def find_document_reminders(referrals: Iterable[ReferralRead], now: datetime) -> list[DocumentReminder]:
    """Referrals in documents_requested untouched for DOCUMENT_REMINDER_DAYS or more."""
    reminders = []
    for referral in referrals:
        if referral.workflow_status != WorkflowStatus.DOCUMENTS_REQUESTED:
            continue
        days = days_since(referral.last_modified_at, now)
        if days is not None and days >= DOCUMENT_REMINDER_DAYS:
            reminders.append(DocumentReminder(referral_id=str(referral.id), days_waiting=days))
    return reminders


def run_document_reminder_sweep(
    repository: ReferralRepository,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> list[DocumentReminder]:
    now = now or datetime.utcnow()
    reminders = find_document_reminders(
        repository.list_all({"workflow_status": WorkflowStatus.DOCUMENTS_REQUESTED}), now
    )
    for reminder in reminders:
        dispatch_notification(
            notifier,
            NotificationEvent(
                kind=NotificationKind.DOCUMENT_REMINDER,
                referral_id=reminder.referral_id,
                details={"days_waiting": reminder.days_waiting},
            ),
        )
    logger.info("document_reminder_sweep_completed", reminders=len(reminders))
    return reminders
