"""
Referral Workflow API Endpoints

Provides endpoints for moving referrals through the workflow:
- Submit a referral
- Get a referral
- Transition a referral to a new workflow status
- List the statuses a referral may move to next
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Header
from pydantic import BaseModel, Field

from src.models.base import get_session_factory
from src.models.referral import ClientState, ReferralCreate, ReferralRead, WorkflowStatus
from src.services.audit import AuditService
from src.services.referral_repository import (
    ConcurrencyConflict,
    ReferralNotFound,
    SqlReferralRepository,
)
from src.services.referral_workflow import ReferralWorkflowService
from src.services.workflow import (
    InvalidStatusTransition,
    ReasonRequired,
    WorkflowTransitionError,
    phase_name,
    state_of,
    status_label,
)


router = APIRouter(prefix="/referrals", tags=["referrals"])


# =============================================================================
# Module-level services (for dependency injection)
# =============================================================================

_workflow_service: Optional[ReferralWorkflowService] = None


def get_referral_workflow_service() -> ReferralWorkflowService:
    """Get or create the referral workflow service."""
    global _workflow_service
    if _workflow_service is None:
        session_factory = get_session_factory()
        _workflow_service = ReferralWorkflowService(
            SqlReferralRepository(session_factory),
            audit_service=AuditService(session_factory),
        )
    return _workflow_service


def set_referral_workflow_service(service: Optional[ReferralWorkflowService]) -> None:
    """Set referral workflow service (for testing)."""
    global _workflow_service
    _workflow_service = service


# =============================================================================
# Request/Response Models
# =============================================================================

class TransitionRequest(BaseModel):
    """Request to move a referral to a new workflow status."""
    target_status: WorkflowStatus
    reason: Optional[str] = Field(None, max_length=2000, description="Decline or discharge reason")


class StatusOption(BaseModel):
    status: WorkflowStatus
    label: str
    client_state: ClientState


class NextStatusesResponse(BaseModel):
    """Allowed next statuses for a referral."""
    referral_id: UUID
    current_status: WorkflowStatus
    phase: str
    next_statuses: list[StatusOption]


def _options(statuses) -> list[StatusOption]:
    return [
        StatusOption(status=s, label=status_label(s), client_state=state_of(s))
        for s in statuses
    ]


def transition_error_response(e: WorkflowTransitionError) -> HTTPException:
    """Map a rejected transition to a 409/422 with guidance for the caller."""
    if isinstance(e, ReasonRequired):
        return HTTPException(
            status_code=422,
            detail={"message": str(e), "required_reason": e.kind},
        )
    detail = {"message": str(e)}
    if isinstance(e, InvalidStatusTransition):
        detail["allowed_next_statuses"] = [s.value for s in e.allowed]
    return HTTPException(status_code=409, detail=detail)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/", response_model=ReferralRead, status_code=201)
async def create_referral(
    data: ReferralCreate,
    x_user_id: str = Header(...),
) -> ReferralRead:
    """Submit a new referral (starts at prospective / referral_submitted)."""
    service = get_referral_workflow_service()
    return service.repository.create(data, created_by=x_user_id)


@router.get("/{referral_id}", response_model=ReferralRead)
async def get_referral(referral_id: UUID, x_user_id: str = Header(...)) -> ReferralRead:
    service = get_referral_workflow_service()
    try:
        return service.repository.get(referral_id)
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{referral_id}/transition", response_model=ReferralRead)
async def transition_referral(
    referral_id: UUID,
    request: TransitionRequest,
    x_user_id: str = Header(...),
) -> ReferralRead:
    """
    Apply a workflow transition.

    409 when the transition is not allowed (with the allowed next statuses)
    or the referral changed concurrently; 422 when a reason is required.
    """
    service = get_referral_workflow_service()
    try:
        return service.transition_referral(
            referral_id,
            request.target_status,
            reason=request.reason,
            actor_id=x_user_id,
        )
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowTransitionError as e:
        raise transition_error_response(e)
    except ConcurrencyConflict as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "current_status": e.actual_status},
        )


@router.get("/{referral_id}/next-statuses", response_model=NextStatusesResponse)
async def get_next_statuses(referral_id: UUID, x_user_id: str = Header(...)) -> NextStatusesResponse:
    service = get_referral_workflow_service()
    try:
        referral = service.repository.get(referral_id)
        statuses = service.get_next_valid_statuses(referral_id)
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return NextStatusesResponse(
        referral_id=referral.id,
        current_status=referral.workflow_status,
        phase=phase_name(referral.client_state),
        next_statuses=_options(statuses),
    )
