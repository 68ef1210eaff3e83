"""
IntakePackage model - One encrypted export artifact tied to a referral.

Only ciphertext leaves the system of record. The row keeps what is needed to
find, verify and decrypt the object (key id, iv, tag, checksum) but never the
raw data key.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from src.models.base import Base


ENCRYPTION_ALGORITHM = "AES-256-GCM"


# =============================================================================
# Enums
# =============================================================================

class PackageStatus(str, Enum):
    """Lifecycle status of an intake package."""
    PENDING = "pending"
    ENCRYPTED = "encrypted"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    EXPIRED = "expired"
    ERROR = "error"


TERMINAL_PACKAGE_STATUSES = frozenset({
    PackageStatus.DOWNLOADED,
    PackageStatus.EXPIRED,
    PackageStatus.ERROR,
})


class PackageType(str, Enum):
    """Kind of content carried by a package."""
    REFERRAL_EXPORT = "referral_export"
    INTAKE_FORM = "intake_form"
    ASSESSMENT_DATA = "assessment_data"
    DOCUMENT_BUNDLE = "document_bundle"


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class IntakePackage(Base):
    """SQLAlchemy model for intake_packages table."""

    __tablename__ = "intake_packages"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    referral_id = Column(
        PG_UUID(as_uuid=True),
        ForeignKey("referrals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    package_name = Column(String(255), nullable=False)
    package_type = Column(String(50), nullable=False, default=PackageType.REFERRAL_EXPORT.value)

    # Encryption details (key id is an opaque reference, never the key)
    encryption_algorithm = Column(String(50), nullable=False, default=ENCRYPTION_ALGORITHM)
    encryption_key_id = Column(String(512), nullable=True)
    iv = Column(String(32), nullable=True)  # hex
    auth_tag = Column(String(32), nullable=True)  # hex

    # Object storage
    storage_key = Column(String(512), nullable=True)
    storage_url = Column(Text, nullable=True)
    presigned_url = Column(Text, nullable=True)
    presigned_url_expiry = Column(DateTime(timezone=True), nullable=True)

    file_size_bytes = Column(Integer, nullable=True)
    checksum_sha256 = Column(String(64), nullable=True)

    status = Column(String(20), nullable=False, default=PackageStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)

    notification_recipient = Column(String(255), nullable=True)
    notification_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    uploaded_at = Column(DateTime(timezone=True), nullable=True)
    downloaded_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_by = Column(String(100), nullable=True)
    last_modified_at = Column(
        DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'encrypted', 'uploaded', 'downloaded', 'expired', 'error')",
            name="intake_package_status_valid",
        ),
        CheckConstraint(
            "presigned_url_expiry IS NULL OR presigned_url_expiry <= expires_at",
            name="presigned_url_within_object_lifetime",
        ),
        CheckConstraint(
            "status != 'error' OR error_message IS NOT NULL",
            name="error_message_required_on_error",
        ),
    )

    referral = relationship("Referral", back_populates="intake_packages")

    def __repr__(self) -> str:
        return f"<IntakePackage(id={self.id}, referral_id={self.referral_id}, status={self.status})>"


# =============================================================================
# Pydantic Schemas
# =============================================================================

class IntakePackageCreate(BaseModel):
    """Options for creating an intake package."""
    package_name: Optional[str] = Field(None, min_length=1, max_length=255)
    package_type: PackageType = Field(PackageType.REFERRAL_EXPORT)
    notification_recipient: Optional[EmailStr] = Field(
        None, description="Where the package-ready notification is sent"
    )
    include_key: bool = Field(
        False,
        description="Development only: return the raw data key. Refused in production.",
    )


class IntakePackageRead(BaseModel):
    """Schema for reading package metadata."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    referral_id: UUID
    package_name: str
    package_type: PackageType
    encryption_algorithm: str
    encryption_key_id: Optional[str] = None
    iv: Optional[str] = None
    auth_tag: Optional[str] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    presigned_url_expiry: Optional[datetime] = None
    file_size_bytes: Optional[int] = None
    checksum_sha256: Optional[str] = None
    status: PackageStatus
    error_message: Optional[str] = None
    notification_recipient: Optional[str] = None
    notification_sent_at: Optional[datetime] = None
    created_at: datetime
    uploaded_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    expires_at: datetime
    created_by: Optional[str] = None


class IntakePackageSummary(BaseModel):
    """Result of a successful export: package metadata plus a download URL."""
    package: IntakePackageRead
    presigned_url: str
    presigned_url_expiry: datetime
    expires_at: datetime
    encryption_key: Optional[str] = Field(
        None, description="Raw key hex. Only populated by the development escape hatch."
    )
    key_warning: Optional[str] = None


class DownloadLink(BaseModel):
    """A freshly minted download URL for an existing package."""
    package_id: UUID
    presigned_url: str
    presigned_url_expiry: datetime
    expires_at: datetime
