"""
Intake Package API Endpoints

Provides endpoints for encrypted intake package exports:
- Export a referral as an encrypted package
- List and get package metadata (expiry reflected at read time)
- Issue a fresh download link
- Confirm a download
- Delete a package
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Header, Query
from pydantic import BaseModel

from src.api.referrals import get_referral_workflow_service, transition_error_response
from src.models.base import get_session_factory
from src.models.intake_package import (
    DownloadLink,
    IntakePackageCreate,
    IntakePackageRead,
    IntakePackageSummary,
    PackageStatus,
)
from src.services.audit import AuditService
from src.services.intake_packages import (
    IntakePackageService,
    InvalidExportRequest,
    PackageExpired,
    PackageExportError,
    PackageNotFound,
    PackageNotReady,
)
from src.services.key_provider import get_key_provider
from src.services.notifications import get_notification_sink
from src.services.object_store import ObjectStoreError, ObjectStoreGateway
from src.services.referral_repository import ConcurrencyConflict, ReferralNotFound
from src.services.workflow import WorkflowTransitionError


router = APIRouter(prefix="/intake-packages", tags=["intake-packages"])


# =============================================================================
# Module-level services (for dependency injection)
# =============================================================================

_package_service: Optional[IntakePackageService] = None


def get_intake_package_service() -> IntakePackageService:
    """Get or create intake package service."""
    global _package_service
    if _package_service is None:
        session_factory = get_session_factory()
        workflow_service = get_referral_workflow_service()
        _package_service = IntakePackageService(
            session_factory,
            referral_repository=workflow_service.repository,
            workflow_service=workflow_service,
            key_provider=get_key_provider(),
            object_store=ObjectStoreGateway(),
            notifier=get_notification_sink(),
            audit_service=AuditService(session_factory),
        )
    return _package_service


def set_intake_package_service(service: Optional[IntakePackageService]) -> None:
    """Set intake package service (for testing)."""
    global _package_service
    _package_service = service


# =============================================================================
# Request/Response Models
# =============================================================================

class CreatePackageRequest(IntakePackageCreate):
    """Export request: which referral plus package options."""
    referral_id: UUID


class PackageListResponse(BaseModel):
    packages: list[IntakePackageRead]
    count: int


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/", response_model=IntakePackageSummary, status_code=201)
async def create_intake_package(
    request: CreatePackageRequest,
    x_user_id: str = Header(...),
) -> IntakePackageSummary:
    """
    Export a referral as an encrypted intake package.

    404 unknown referral, 409 referral not exportable from its status,
    400 rejected options, 502 encryption/storage failure.
    """
    service = get_intake_package_service()
    options = IntakePackageCreate(**request.model_dump(exclude={"referral_id"}))
    try:
        return await service.create_intake_package(
            request.referral_id, options=options, created_by=x_user_id
        )
    except ReferralNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowTransitionError as e:
        raise transition_error_response(e)
    except ConcurrencyConflict as e:
        raise HTTPException(status_code=409, detail={"message": str(e)})
    except InvalidExportRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PackageExportError as e:
        raise HTTPException(
            status_code=502,
            detail={"message": "Intake package export failed", "package_id": e.package_id},
        )


@router.get("/", response_model=PackageListResponse)
async def list_intake_packages(
    referral_id: Optional[UUID] = Query(None, description="Only packages for this referral"),
    status: Optional[PackageStatus] = Query(None, description="Filter by package status"),
    x_user_id: str = Header(...),
) -> PackageListResponse:
    service = get_intake_package_service()
    packages = service.list_packages(referral_id=referral_id, status=status)
    return PackageListResponse(packages=packages, count=len(packages))


@router.get("/{package_id}", response_model=IntakePackageRead)
async def get_intake_package(package_id: UUID, x_user_id: str = Header(...)) -> IntakePackageRead:
    service = get_intake_package_service()
    try:
        return service.get_package(package_id)
    except PackageNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{package_id}/download", response_model=DownloadLink)
async def get_download_link(package_id: UUID, x_user_id: str = Header(...)) -> DownloadLink:
    """Fresh presigned URL. 410 once the package has expired."""
    service = get_intake_package_service()
    try:
        return await service.get_download_url(package_id, actor_id=x_user_id)
    except PackageNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PackageExpired as e:
        raise HTTPException(status_code=410, detail=str(e))
    except PackageNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ObjectStoreError:
        raise HTTPException(status_code=502, detail="Could not generate download link")


@router.post("/{package_id}/downloaded", response_model=IntakePackageRead)
async def mark_downloaded(package_id: UUID, x_user_id: str = Header(...)) -> IntakePackageRead:
    service = get_intake_package_service()
    try:
        return service.mark_downloaded(package_id, actor_id=x_user_id)
    except PackageNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PackageExpired as e:
        raise HTTPException(status_code=410, detail=str(e))
    except PackageNotReady as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.delete("/{package_id}", status_code=204)
async def delete_intake_package(package_id: UUID, x_user_id: str = Header(...)) -> None:
    service = get_intake_package_service()
    try:
        await service.delete_package(package_id, actor_id=x_user_id)
    except PackageNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ObjectStoreError:
        raise HTTPException(status_code=502, detail="Could not delete stored package")
