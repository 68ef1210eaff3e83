# MindFit Models Package
# SQLAlchemy ORM models with Pydantic schemas

from src.models.base import Base, get_engine, get_session, init_db
from src.models.referral import (
    ClientState,
    Referral,
    ReferralCreate,
    ReferralRead,
    Urgency,
    WorkflowStatus,
)
from src.models.intake_package import (
    DownloadLink,
    IntakePackage,
    IntakePackageCreate,
    IntakePackageRead,
    IntakePackageSummary,
    PackageStatus,
    PackageType,
)
from src.models.audit_log import AuditLog, AuditLogRead, AuditEventType, AuditAction

__all__ = [
    # Base
    "Base",
    "get_engine",
    "get_session",
    "init_db",
    # Referral
    "ClientState",
    "Referral",
    "ReferralCreate",
    "ReferralRead",
    "Urgency",
    "WorkflowStatus",
    # Intake Package
    "DownloadLink",
    "IntakePackage",
    "IntakePackageCreate",
    "IntakePackageRead",
    "IntakePackageSummary",
    "PackageStatus",
    "PackageType",
    # Audit Log
    "AuditLog",
    "AuditLogRead",
    "AuditEventType",
    "AuditAction",
]
