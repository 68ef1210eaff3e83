"""
Intake export pipeline.

Turns one referral into an encrypted intake package:
1. Validate the request and the referral's workflow position
2. Insert the package row (pending)
3. Generate a data key, serialize + encrypt + checksum (encrypted)
4. Upload ciphertext and sign a download URL (uploaded)
5. Move the referral to package_exported
6. Audit the export and notify staff

Stages run strictly in order. Any failure after the row exists leaves the
package in ``error``; a retry creates a new package.
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

import structlog

from src.models.intake_package import (
    ENCRYPTION_ALGORITHM,
    IntakePackage,
    IntakePackageCreate,
    IntakePackageRead,
    IntakePackageSummary,
    PackageStatus,
)
from src.pipelines.base import advance_package, fail_package
from src.services.audit import AuditService
from src.services.key_provider import EncryptionKey, KeyProvider
from src.services.notifications import (
    NotificationEvent,
    NotificationKind,
    NotificationSink,
    dispatch_notification,
)
from src.services.object_store import ObjectStoreError, ObjectStoreGateway
from src.services.package_codec import encode_package
from src.services.referral_repository import ConcurrencyConflict, ReferralRepository
from src.services.referral_workflow import ReferralWorkflowService
from src.services.workflow import EXPORT_STATUS, WorkflowTransitionError, compute_transition

logger = structlog.get_logger(__name__)


DEFAULT_EXPIRY_DAYS = 7
DEFAULT_URL_TTL_HOURS = 24
KEY_EXPORT_WARNING = (
    "Raw encryption key returned by the development key-export escape hatch. "
    "Never enable MINDFIT_ALLOW_KEY_EXPORT in production."
)


class PackageExportError(Exception):
    """Export failed; the package (if created) is in ``error``."""

    def __init__(self, message: str, package_id: Optional[str | UUID] = None):
        self.package_id = str(package_id) if package_id is not None else None
        super().__init__(message)


class InvalidExportRequest(PackageExportError):
    """Export options were rejected before anything was written."""
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _positive_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidExportRequest(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise InvalidExportRequest(f"{name} must be positive, got {value}")
    return value


def package_expiry() -> timedelta:
    """Object lifetime, from PACKAGE_EXPIRY_DAYS (default 7 days)."""
    return timedelta(days=_positive_int_env("PACKAGE_EXPIRY_DAYS", DEFAULT_EXPIRY_DAYS))


def url_ttl() -> timedelta:
    """Presigned URL lifetime, from PRESIGNED_URL_TTL_HOURS (default 24 hours)."""
    return timedelta(hours=_positive_int_env("PRESIGNED_URL_TTL_HOURS", DEFAULT_URL_TTL_HOURS))


def key_export_allowed() -> bool:
    """Development escape hatch: MINDFIT_ALLOW_KEY_EXPORT=true outside production."""
    if os.environ.get("MINDFIT_ENV", "development") == "production":
        return False
    return os.environ.get("MINDFIT_ALLOW_KEY_EXPORT", "false").lower() == "true"


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _insert_pending_package(session_factory, package: IntakePackage) -> None:
    session = session_factory()
    try:
        session.add(package)
        session.commit()
    except Exception:
        session.rollback()
        logger.error("package_insert_failed", referral_id=str(package.referral_id))
        raise
    finally:
        session.close()


def _load_package(session_factory, package_id: UUID) -> IntakePackageRead:
    session = session_factory()
    try:
        return IntakePackageRead.model_validate(session.get(IntakePackage, package_id))
    finally:
        session.close()


def _record_notification(session_factory, package_id: UUID, sent_at: datetime) -> None:
    """Stamp notification_sent_at. Best-effort: the notification already went out."""
    session = session_factory()
    try:
        package = session.get(IntakePackage, package_id)
        if package is not None:
            package.notification_sent_at = sent_at
            session.commit()
    except Exception as e:
        session.rollback()
        logger.error(
            "package_notification_update_failed",
            package_id=str(package_id),
            error_type=type(e).__name__,
        )
    finally:
        session.close()


async def _discard_object(object_store: ObjectStoreGateway, storage_key: str) -> None:
    """Remove an uploaded object that will never be handed out."""
    try:
        await asyncio.to_thread(object_store.delete, storage_key)
    except ObjectStoreError:
        logger.warning("orphaned_object_not_deleted", key=storage_key)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def run_intake_export_pipeline(
    referral_id: str | UUID,
    session_factory,
    *,
    options: Optional[IntakePackageCreate] = None,
    created_by: Optional[str] = None,
    referral_repository: ReferralRepository,
    workflow_service: ReferralWorkflowService,
    key_provider: KeyProvider,
    object_store: ObjectStoreGateway,
    notifier: Optional[NotificationSink] = None,
    audit_service: Optional[AuditService] = None,
    now: Optional[datetime] = None,
) -> IntakePackageSummary:
    """Export a referral as an encrypted intake package.

    Args:
        referral_id: Referral to export.
        session_factory: SQLAlchemy session factory for package rows.
        options: Package name/type, notification recipient, key escape hatch.
        created_by: Staff id recorded on the package and audit entry.
        referral_repository: Referral storage.
        workflow_service: Applies the package_exported transition.
        key_provider: Issues the per-package data key.
        object_store: Upload target and URL signer.
        notifier: Receives the package_ready event.
        audit_service: Records the phi_export event.
        now: Clock override.

    Returns:
        IntakePackageSummary with the uploaded package and a download URL.

    Raises:
        InvalidExportRequest: Bad options; nothing written.
        ReferralNotFound: Unknown referral; nothing written.
        WorkflowTransitionError: Referral cannot be exported from its current
            status; nothing written.
        PackageExportError: Encryption, storage or database failure; the
            package is marked ``error`` and the referral is unchanged.
        ConcurrencyConflict: Referral changed during the export; the package
            is marked ``error``.
    """
    options = options or IntakePackageCreate()
    now = now or datetime.utcnow()

    # ------------------------------------------------------------------ #
    # Validate
    # ------------------------------------------------------------------ #
    if options.include_key and not key_export_allowed():
        raise InvalidExportRequest(
            "include_key requires MINDFIT_ALLOW_KEY_EXPORT=true and a non-production environment"
        )

    referral = referral_repository.get(referral_id)
    compute_transition(referral.client_state, referral.workflow_status, EXPORT_STATUS, now=now)

    expires_at = now + package_expiry()
    url_expiry = min(now + url_ttl(), expires_at)
    package_id = uuid4()
    package_name = options.package_name or f"intake-{referral.id}-{now:%Y%m%d%H%M%S}"
    recipient = options.notification_recipient or os.environ.get("NOTIFICATION_RECIPIENT")

    # ------------------------------------------------------------------ #
    # Stage 1: pending row
    # ------------------------------------------------------------------ #
    package = IntakePackage(
        id=package_id,
        referral_id=referral.id,
        package_name=package_name,
        package_type=options.package_type.value,
        encryption_algorithm=ENCRYPTION_ALGORITHM,
        status=PackageStatus.PENDING.value,
        notification_recipient=recipient,
        created_at=now,
        expires_at=expires_at,
        created_by=created_by,
        last_modified_at=now,
    )
    try:
        _insert_pending_package(session_factory, package)
    except Exception as e:
        raise PackageExportError("Failed to create intake package") from e

    logger.info("package_export_started", package_id=str(package_id), referral_id=str(referral.id))

    key: Optional[EncryptionKey] = None
    storage_key: Optional[str] = None
    try:
        # ------------------------------------------------------------------ #
        # Stage 2: encrypt
        # ------------------------------------------------------------------ #
        key = key_provider.generate_key()
        encoded = encode_package(
            referral,
            key,
            package_name=package_name,
            package_type=options.package_type.value,
            exported_by=created_by,
            exported_at=now,
        )
        advance_package(
            session_factory,
            package_id,
            PackageStatus.ENCRYPTED,
            encryption_key_id=encoded.key_id,
            iv=encoded.iv.hex(),
            auth_tag=encoded.auth_tag.hex(),
            checksum_sha256=encoded.checksum,
            file_size_bytes=encoded.size_bytes,
        )

        # ------------------------------------------------------------------ #
        # Stage 3: upload + sign
        # ------------------------------------------------------------------ #
        object_key = object_store.build_key(str(referral.id), str(package_id), now)
        stored = await asyncio.to_thread(
            object_store.put,
            encoded.ciphertext,
            object_key,
            {
                "package-id": str(package_id),
                "referral-id": str(referral.id),
                "checksum-sha256": encoded.checksum,
                "iv": encoded.iv.hex(),
                "auth-tag": encoded.auth_tag.hex(),
                "key-id": encoded.key_id,
                "algorithm": ENCRYPTION_ALGORITHM,
            },
        )
        storage_key = stored.key
        presigned_url = await asyncio.to_thread(
            object_store.sign_download_url,
            stored.key,
            int((url_expiry - now).total_seconds()),
        )
        advance_package(
            session_factory,
            package_id,
            PackageStatus.UPLOADED,
            storage_key=stored.key,
            storage_url=stored.url,
            presigned_url=presigned_url,
            presigned_url_expiry=url_expiry,
            uploaded_at=datetime.utcnow(),
        )
        logger.info(
            "package_uploaded",
            package_id=str(package_id),
            size_bytes=encoded.size_bytes,
            checksum=encoded.checksum,
        )

        # ------------------------------------------------------------------ #
        # Stage 4: referral -> package_exported
        # ------------------------------------------------------------------ #
        workflow_service.transition_referral(
            referral.id, EXPORT_STATUS, actor_id=created_by, now=now
        )
    except (WorkflowTransitionError, ConcurrencyConflict) as e:
        fail_package(session_factory, package_id, "Referral changed during export")
        if storage_key:
            await _discard_object(object_store, storage_key)
        logger.warning(
            "package_export_conflict",
            package_id=str(package_id),
            referral_id=str(referral.id),
            error_type=type(e).__name__,
        )
        raise
    except Exception as e:
        fail_package(session_factory, package_id, f"Export failed during {type(e).__name__}")
        if storage_key:
            await _discard_object(object_store, storage_key)
        logger.error(
            "package_export_failed",
            package_id=str(package_id),
            referral_id=str(referral.id),
            error_type=type(e).__name__,
        )
        raise PackageExportError("Failed to export intake package", package_id=package_id) from e

    # ------------------------------------------------------------------ #
    # Stage 5: audit + notify
    # ------------------------------------------------------------------ #
    # The package and referral are committed from here on; bookkeeping
    # failures are logged and never reported as an export failure.
    if audit_service is not None:
        try:
            audit_service.log_package_export(
                user_id=created_by,
                package_id=package_id,
                referral_id=referral.id,
                details={
                    "checksum_sha256": encoded.checksum,
                    "file_size_bytes": encoded.size_bytes,
                    "expires_at": expires_at.isoformat(),
                },
            )
        except Exception as e:
            logger.error(
                "package_export_audit_failed",
                package_id=str(package_id),
                error_type=type(e).__name__,
            )

    delivered = dispatch_notification(
        notifier,
        NotificationEvent(
            kind=NotificationKind.PACKAGE_READY,
            referral_id=str(referral.id),
            package_id=str(package_id),
            url=presigned_url,
            url_expires_at=url_expiry,
            recipient=recipient,
        ),
    )
    if delivered:
        _record_notification(session_factory, package_id, datetime.utcnow())

    summary = IntakePackageSummary(
        package=_load_package(session_factory, package_id),
        presigned_url=presigned_url,
        presigned_url_expiry=url_expiry,
        expires_at=expires_at,
    )
    if options.include_key:
        logger.warning("package_key_exported", package_id=str(package_id))
        summary.encryption_key = key.key.hex()
        summary.key_warning = KEY_EXPORT_WARNING

    logger.info("package_export_completed", package_id=str(package_id), referral_id=str(referral.id))
    return summary
