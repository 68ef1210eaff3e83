"""
AuditLog model - HIPAA-required audit trail for PHI exports and workflow changes.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from src.models.base import Base, JSONType


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class AuditLog(Base):
    """SQLAlchemy model for audit_logs table."""

    __tablename__ = "audit_logs"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), nullable=True, index=True)  # Staff id or "system-automation"
    resource_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, event_type={self.event_type}, action={self.action})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class AuditLogRead(BaseModel):
    """Schema for reading audit log data."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str = Field(..., max_length=100)
    resource_type: str = Field(..., max_length=100)
    action: str = Field(..., max_length=50)
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict[str, Any] = {}
    created_at: datetime


# =============================================================================
# Audit Event Types (Constants)
# =============================================================================

class AuditEventType:
    """Standard audit event types."""
    PHI_EXPORT = "phi_export"
    PHI_DOWNLOAD = "phi_download"
    PHI_DECRYPT = "phi_decrypt"
    PHI_DELETE = "phi_delete"
    WORKFLOW_TRANSITION = "workflow_transition"


class AuditAction:
    """Standard audit actions."""
    EXPORT = "export"
    READ = "read"
    DECRYPT = "decrypt"
    DELETE = "delete"
    TRANSITION = "transition"
