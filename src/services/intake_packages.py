"""
Intake Package Service

Entry point for everything done with intake packages after (and including)
their creation: export, lookup with read-time expiry, fresh download links,
download confirmation, deletion and decryption.

Expiry is enforced when packages are read: a package whose ``expires_at`` has
passed is reported (and persisted) as ``expired``. Removing the bytes is the
bucket lifecycle policy's job.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from src.models.base import as_naive_utc
from src.models.intake_package import (
    DownloadLink,
    IntakePackage,
    IntakePackageCreate,
    IntakePackageRead,
    IntakePackageSummary,
    PackageStatus,
)
from src.pipelines.base import advance_package
from src.pipelines.intake_export import (
    InvalidExportRequest,
    PackageExportError,
    run_intake_export_pipeline,
    url_ttl,
)
from src.services.audit import AuditService
from src.services.crypto import payload_from_hex
from src.services.key_provider import KeyProvider
from src.services.notifications import NotificationSink
from src.services.object_store import ObjectStoreGateway
from src.services.package_codec import decode_package
from src.services.referral_repository import ReferralRepository
from src.services.referral_workflow import ReferralWorkflowService

logger = structlog.get_logger(__name__)

__all__ = [
    "IntakePackageService",
    "InvalidExportRequest",
    "PackageExpired",
    "PackageExportError",
    "PackageNotFound",
    "PackageNotReady",
]

_DOWNLOADABLE = (PackageStatus.UPLOADED, PackageStatus.DOWNLOADED)


class PackageNotFound(Exception):
    """Package id does not exist."""
    pass


class PackageExpired(Exception):
    """Package is past its expires_at and can no longer be downloaded."""
    pass


class PackageNotReady(Exception):
    """Package never finished uploading (pending, encrypted or error)."""
    pass


def _to_uuid(value: str | UUID) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise PackageNotFound(f"Package {value} not found") from None


def _is_past(expires_at: datetime, now: datetime) -> bool:
    return as_naive_utc(now) >= as_naive_utc(expires_at)


class IntakePackageService:
    """
    Intake package operations.

    Args:
        session_factory: SQLAlchemy session factory.
        referral_repository: Referral storage.
        workflow_service: Referral workflow transitions.
        key_provider: Data key issuer / resolver.
        object_store: Package storage.
        notifier: Optional notification sink.
        audit_service: Optional audit trail.
    """

    def __init__(
        self,
        session_factory: Callable,
        referral_repository: ReferralRepository,
        workflow_service: ReferralWorkflowService,
        key_provider: KeyProvider,
        object_store: ObjectStoreGateway,
        notifier: Optional[NotificationSink] = None,
        audit_service: Optional[AuditService] = None,
    ):
        self._session_factory = session_factory
        self.referral_repository = referral_repository
        self.workflow_service = workflow_service
        self.key_provider = key_provider
        self.object_store = object_store
        self.notifier = notifier
        self.audit_service = audit_service

    # ------------------------------------------------------------------ #
    # Export
    # ------------------------------------------------------------------ #

    async def create_intake_package(
        self,
        referral_id: str | UUID,
        options: Optional[IntakePackageCreate] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IntakePackageSummary:
        """Run the export pipeline for *referral_id*."""
        return await run_intake_export_pipeline(
            referral_id,
            self._session_factory,
            options=options,
            created_by=created_by,
            referral_repository=self.referral_repository,
            workflow_service=self.workflow_service,
            key_provider=self.key_provider,
            object_store=self.object_store,
            notifier=self.notifier,
            audit_service=self.audit_service,
            now=now,
        )

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def _expire_if_due(self, package: IntakePackage, now: datetime) -> IntakePackageRead:
        status = PackageStatus(package.status)
        if status not in (PackageStatus.EXPIRED, PackageStatus.ERROR) and _is_past(package.expires_at, now):
            advance_package(self._session_factory, package.id, PackageStatus.EXPIRED)
            logger.info("package_expired", package_id=str(package.id), from_status=status.value)
            read = IntakePackageRead.model_validate(package)
            return read.model_copy(update={"status": PackageStatus.EXPIRED})
        return IntakePackageRead.model_validate(package)

    def get_package(self, package_id: str | UUID, now: Optional[datetime] = None) -> IntakePackageRead:
        """
        Fetch package metadata, reflecting expiry.

        Raises:
            PackageNotFound: Unknown package id.
        """
        now = now or datetime.utcnow()
        session = self._session_factory()
        try:
            package = session.get(IntakePackage, _to_uuid(package_id))
            if package is None:
                raise PackageNotFound(f"Package {package_id} not found")
            session.expunge(package)
        finally:
            session.close()
        return self._expire_if_due(package, now)

    def list_packages(
        self,
        referral_id: Optional[str | UUID] = None,
        status: Optional[PackageStatus] = None,
        now: Optional[datetime] = None,
    ) -> list[IntakePackageRead]:
        """List packages newest first, reflecting expiry before filtering by status."""
        now = now or datetime.utcnow()
        session = self._session_factory()
        try:
            query = session.query(IntakePackage)
            if referral_id is not None:
                query = query.filter(IntakePackage.referral_id == _to_uuid(referral_id))
            packages = query.order_by(IntakePackage.created_at.desc()).all()
            session.expunge_all()
        finally:
            session.close()

        results = [self._expire_if_due(p, now) for p in packages]
        if status is not None:
            results = [p for p in results if p.status == status]
        return results

    # ------------------------------------------------------------------ #
    # Download
    # ------------------------------------------------------------------ #

    async def get_download_url(
        self,
        package_id: str | UUID,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DownloadLink:
        """
        Mint a fresh presigned URL, never outliving the object.

        Raises:
            PackageNotFound: Unknown package.
            PackageExpired: Package past its expires_at.
            PackageNotReady: Package was never uploaded.
        """
        now = now or datetime.utcnow()
        package = self.get_package(package_id, now=now)
        if package.status == PackageStatus.EXPIRED:
            raise PackageExpired(f"Package {package_id} has expired")
        if package.status not in _DOWNLOADABLE or not package.storage_key:
            raise PackageNotReady(f"Package {package_id} is {package.status.value}")

        expires_at = as_naive_utc(package.expires_at)
        url_expiry = min(as_naive_utc(now) + url_ttl(), expires_at)
        ttl_seconds = int((url_expiry - as_naive_utc(now)).total_seconds())
        if ttl_seconds <= 0:
            raise PackageExpired(f"Package {package_id} has expired")

        url = await asyncio.to_thread(self.object_store.sign_download_url, package.storage_key, ttl_seconds)

        session = self._session_factory()
        try:
            row = session.get(IntakePackage, package.id)
            row.presigned_url = url
            row.presigned_url_expiry = url_expiry
            session.commit()
        except Exception:
            session.rollback()
            logger.error("package_url_update_failed", package_id=str(package.id))
            raise
        finally:
            session.close()

        if self.audit_service is not None:
            self.audit_service.log_package_download(
                user_id=actor_id,
                package_id=package.id,
                details={"url_expires_at": url_expiry.isoformat()},
            )
        logger.info("package_download_url_issued", package_id=str(package.id), ttl_seconds=ttl_seconds)
        return DownloadLink(
            package_id=package.id,
            presigned_url=url,
            presigned_url_expiry=url_expiry,
            expires_at=expires_at,
        )

    def mark_downloaded(
        self,
        package_id: str | UUID,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IntakePackageRead:
        """
        Record a confirmed download. Repeat confirmations are no-ops.

        Raises:
            PackageNotFound, PackageExpired, PackageNotReady
        """
        now = now or datetime.utcnow()
        package = self.get_package(package_id, now=now)
        if package.status == PackageStatus.EXPIRED:
            raise PackageExpired(f"Package {package_id} has expired")
        if package.status == PackageStatus.DOWNLOADED:
            return package
        if package.status != PackageStatus.UPLOADED:
            raise PackageNotReady(f"Package {package_id} is {package.status.value}")

        advance_package(self._session_factory, package.id, PackageStatus.DOWNLOADED, downloaded_at=now)
        if self.audit_service is not None:
            self.audit_service.log_package_download(
                user_id=actor_id, package_id=package.id, details={"confirmed": True}
            )
        return package.model_copy(update={"status": PackageStatus.DOWNLOADED, "downloaded_at": now})

    # ------------------------------------------------------------------ #
    # Delete / decrypt
    # ------------------------------------------------------------------ #

    async def delete_package(self, package_id: str | UUID, actor_id: Optional[str] = None) -> None:
        """
        Remove the stored object (if any) and the package row.

        Raises:
            PackageNotFound: Unknown package.
            ObjectStoreError: Object could not be deleted; the row is kept.
        """
        pid = _to_uuid(package_id)
        session = self._session_factory()
        try:
            package = session.get(IntakePackage, pid)
            if package is None:
                raise PackageNotFound(f"Package {package_id} not found")
            storage_key = package.storage_key
        finally:
            session.close()

        if storage_key:
            await asyncio.to_thread(self.object_store.delete, storage_key)

        session = self._session_factory()
        try:
            session.query(IntakePackage).filter(IntakePackage.id == pid).delete()
            session.commit()
        except Exception:
            session.rollback()
            logger.error("package_delete_failed", package_id=str(pid))
            raise
        finally:
            session.close()

        if self.audit_service is not None:
            self.audit_service.log_package_delete(user_id=actor_id, package_id=pid)
        logger.info("package_deleted", package_id=str(pid))

    def open_package(
        self,
        package_id: str | UUID,
        ciphertext: bytes,
        actor_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Verify and decrypt downloaded package bytes, returning the referral
        snapshot.

        Raises:
            PackageNotFound: Unknown package.
            PackageNotReady: Package has no encryption metadata.
            KeyNotFound: Data key cannot be resolved.
            ChecksumMismatch / IntegrityError: Bytes were altered.
        """
        session = self._session_factory()
        try:
            package = session.get(IntakePackage, _to_uuid(package_id))
            if package is None:
                raise PackageNotFound(f"Package {package_id} not found")
            package = IntakePackageRead.model_validate(package)
        finally:
            session.close()

        if not (package.encryption_key_id and package.iv and package.auth_tag):
            raise PackageNotReady(f"Package {package_id} has no encryption metadata")

        key = self.key_provider.resolve_key(package.encryption_key_id)
        payload = payload_from_hex(ciphertext, package.iv, package.auth_tag)
        snapshot = decode_package(
            payload.ciphertext,
            payload.iv,
            payload.auth_tag,
            key,
            expected_checksum=package.checksum_sha256,
        )
        if self.audit_service is not None:
            self.audit_service.log_package_decrypt(user_id=actor_id, package_id=package.id)
        return snapshot
