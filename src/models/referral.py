"""
Referral model - One client's intake case, from submission through discharge.

PHI classification:
- client_name, client_email, client_phone, client_age: PHI (contact)
- presenting_concerns, insurance_*: PHI (clinical / financial)
- workflow columns and timestamps: NOT PHI
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base


# =============================================================================
# Enums
# =============================================================================

class Urgency(str, Enum):
    """Clinical urgency of a referral."""
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class ClientState(str, Enum):
    """Coarse-grained referral lifecycle phase."""
    PROSPECTIVE = "prospective"
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class WorkflowStatus(str, Enum):
    """Fine-grained referral lifecycle value within a client state."""
    # Pre-staging
    REFERRAL_SUBMITTED = "referral_submitted"
    DOCUMENTS_REQUESTED = "documents_requested"
    DOCUMENTS_RECEIVED = "documents_received"
    INSURANCE_VERIFICATION_PENDING = "insurance_verification_pending"
    INSURANCE_VERIFIED = "insurance_verified"
    INSURANCE_VERIFICATION_FAILED = "insurance_verification_failed"
    PRE_STAGE_REVIEW = "pre_stage_review"
    # Staging
    READY_FOR_ASSIGNMENT = "ready_for_assignment"
    MATCHING_IN_PROGRESS = "matching_in_progress"
    THERAPIST_IDENTIFIED = "therapist_identified"
    # Assignment
    ASSIGNMENT_PENDING = "assignment_pending"
    ASSIGNMENT_OFFERED = "assignment_offered"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_DECLINED = "assignment_declined"
    # Acceptance
    PACKAGE_EXPORTED = "package_exported"
    CLIENT_CONTACTED = "client_contacted"
    INTAKE_SCHEDULED = "intake_scheduled"
    INTAKE_COMPLETED = "intake_completed"
    WAITING_FIRST_SESSION = "waiting_first_session"
    # Active treatment
    IN_TREATMENT = "in_treatment"
    TREATMENT_ON_HOLD = "treatment_on_hold"
    TREATMENT_RESUMED = "treatment_resumed"
    # Completion
    DISCHARGE_PENDING = "discharge_pending"
    DISCHARGED = "discharged"
    REFERRED_OUT = "referred_out"
    DECLINED = "declined"
    CANCELLED = "cancelled"


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class Referral(Base):
    """SQLAlchemy model for referrals table.

    ``client_state`` is always derived from ``workflow_status``; both are
    written together and only through a validated workflow transition.
    """

    __tablename__ = "referrals"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Contact / clinical (PHI)
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=False)
    client_phone = Column(String(50), nullable=True)
    client_age = Column(Integer, nullable=True)
    presenting_concerns = Column(Text, nullable=False)
    urgency = Column(String(20), nullable=False, default=Urgency.ROUTINE.value)
    insurance_provider = Column(String(255), nullable=True)
    insurance_member_id = Column(String(100), nullable=True)
    referral_source = Column(String(255), nullable=True)
    referral_notes = Column(Text, nullable=True)
    assigned_therapist = Column(String(255), nullable=True)

    # Workflow
    client_state = Column(String(20), nullable=False, default=ClientState.PROSPECTIVE.value, index=True)
    workflow_status = Column(
        String(50), nullable=False, default=WorkflowStatus.REFERRAL_SUBMITTED.value, index=True
    )
    matching_attempts = Column(Integer, nullable=False, default=0)
    decline_reason = Column(Text, nullable=True)
    discharge_reason = Column(Text, nullable=True)

    # Phase timestamps
    prestage_started_at = Column(DateTime(timezone=True), nullable=True)
    prestage_completed_at = Column(DateTime(timezone=True), nullable=True)
    stage_started_at = Column(DateTime(timezone=True), nullable=True)
    assignment_started_at = Column(DateTime(timezone=True), nullable=True)
    assignment_completed_at = Column(DateTime(timezone=True), nullable=True)
    acceptance_completed_at = Column(DateTime(timezone=True), nullable=True)
    documents_received_at = Column(DateTime(timezone=True), nullable=True)
    insurance_verified_at = Column(DateTime(timezone=True), nullable=True)
    intake_completed_at = Column(DateTime(timezone=True), nullable=True)
    first_session_at = Column(DateTime(timezone=True), nullable=True)
    discharged_at = Column(DateTime(timezone=True), nullable=True)
    exported_at = Column(DateTime(timezone=True), nullable=True)

    # Audit trail
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    created_by = Column(String(100), nullable=True)
    last_modified_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    last_modified_by = Column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint("matching_attempts >= 0", name="matching_attempts_non_negative"),
        CheckConstraint(
            "client_state IN ('prospective', 'pending', 'active', 'inactive')",
            name="client_state_valid",
        ),
        Index("ix_referrals_state_status", "client_state", "workflow_status"),
    )

    intake_packages = relationship("IntakePackage", back_populates="referral")

    def __repr__(self) -> str:
        return (
            f"<Referral(id={self.id}, state={self.client_state}, "
            f"status={self.workflow_status})>"
        )


# Columns a workflow transition is allowed to write
WORKFLOW_COLUMNS = frozenset({
    "client_state",
    "workflow_status",
    "matching_attempts",
    "decline_reason",
    "discharge_reason",
    "prestage_completed_at",
    "stage_started_at",
    "assignment_started_at",
    "assignment_completed_at",
    "acceptance_completed_at",
    "documents_received_at",
    "insurance_verified_at",
    "intake_completed_at",
    "first_session_at",
    "discharged_at",
    "exported_at",
})


# =============================================================================
# Pydantic Schemas
# =============================================================================

class ReferralBase(BaseModel):
    """Base schema for referral intake data."""
    client_name: str = Field(..., min_length=2, max_length=255, description="Client full name")
    client_email: EmailStr = Field(..., description="Client email address")
    client_phone: Optional[str] = Field(None, max_length=50)
    client_age: Optional[int] = Field(None, gt=0, le=150)
    presenting_concerns: str = Field(..., min_length=10, description="Reason for referral")
    urgency: Urgency = Field(Urgency.ROUTINE)
    insurance_provider: Optional[str] = Field(None, max_length=255)
    insurance_member_id: Optional[str] = Field(None, max_length=100)
    referral_source: Optional[str] = Field(None, max_length=255)
    referral_notes: Optional[str] = None


class ReferralCreate(ReferralBase):
    """Schema for submitting a new referral."""
    pass


class ReferralRead(ReferralBase):
    """Schema for reading referral data, including workflow fields."""
    model_config = ConfigDict(from_attributes=True)

    client_email: str
    id: UUID
    assigned_therapist: Optional[str] = None
    client_state: ClientState
    workflow_status: WorkflowStatus
    matching_attempts: int = 0
    decline_reason: Optional[str] = None
    discharge_reason: Optional[str] = None
    prestage_started_at: Optional[datetime] = None
    prestage_completed_at: Optional[datetime] = None
    stage_started_at: Optional[datetime] = None
    assignment_started_at: Optional[datetime] = None
    assignment_completed_at: Optional[datetime] = None
    acceptance_completed_at: Optional[datetime] = None
    documents_received_at: Optional[datetime] = None
    insurance_verified_at: Optional[datetime] = None
    intake_completed_at: Optional[datetime] = None
    first_session_at: Optional[datetime] = None
    discharged_at: Optional[datetime] = None
    exported_at: Optional[datetime] = None
    created_at: datetime
    created_by: Optional[str] = None
    last_modified_at: datetime
    last_modified_by: Optional[str] = None
