"""
Pipeline base utilities for intake package status tracking.

Provides helper functions shared by the export pipeline and the package
service:
- Advancing a package through its lifecycle statuses
- Marking packages as failed (terminal ``error``)
- Consistent timestamp and error handling
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from src.models.intake_package import IntakePackage, PackageStatus, TERMINAL_PACKAGE_STATUSES

logger = structlog.get_logger(__name__)


# Forward-only lifecycle. error is reachable from any non-terminal status,
# expired from anything but error
_NEXT_STATUS = {
    PackageStatus.PENDING: {PackageStatus.ENCRYPTED},
    PackageStatus.ENCRYPTED: {PackageStatus.UPLOADED},
    PackageStatus.UPLOADED: {PackageStatus.DOWNLOADED},
}


class PackageStatusError(Exception):
    """Requested package status change is not part of the lifecycle."""
    pass


def _to_uuid(value: str | UUID) -> UUID:
    """Convert a string or UUID to a UUID object."""
    if isinstance(value, UUID):
        return value
    return UUID(value)


def can_advance(current: PackageStatus, target: PackageStatus) -> bool:
    """True if *target* is a legal next status for *current*."""
    if target == PackageStatus.EXPIRED:
        return current not in (PackageStatus.EXPIRED, PackageStatus.ERROR)
    if current in TERMINAL_PACKAGE_STATUSES:
        return False
    if target == PackageStatus.ERROR:
        return True
    return target in _NEXT_STATUS.get(current, set())


def advance_package(
    session_factory,
    package_id: str | UUID,
    status: PackageStatus,
    **fields: Any,
) -> None:
    """Move a package to *status* and write any accompanying columns.

    Args:
        session_factory: SQLAlchemy session factory.
        package_id: UUID of the package.
        status: Lifecycle status the package is entering.
        **fields: Extra IntakePackage columns to set in the same commit.

    Raises:
        PackageStatusError: If the package is missing or the change would
            move it backwards / out of a terminal status.
    """
    session = session_factory()
    try:
        package = session.get(IntakePackage, _to_uuid(package_id))
        if package is None:
            raise PackageStatusError(f"Package {package_id} not found")
        current = PackageStatus(package.status)
        if not can_advance(current, status):
            raise PackageStatusError(
                f"Invalid package status change: {current.value} -> {status.value}"
            )
        package.status = status.value
        for name, value in fields.items():
            setattr(package, name, value)
        package.last_modified_at = datetime.utcnow()
        session.commit()
        logger.info(
            "package_status_updated",
            package_id=str(package_id),
            from_status=current.value,
            status=status.value,
        )
    except PackageStatusError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.error("package_status_update_failed", package_id=str(package_id), status=status.value)
        raise
    finally:
        session.close()


def fail_package(
    session_factory,
    package_id: str | UUID,
    error_message: str,
) -> None:
    """Mark a package as ERROR with an error message.

    Packages already in a terminal status are left alone.

    Args:
        session_factory: SQLAlchemy session factory.
        package_id: UUID of the package.
        error_message: Generic, non-sensitive error description.
    """
    session = session_factory()
    try:
        package = session.get(IntakePackage, _to_uuid(package_id))
        if package is None:
            logger.warning("package_not_found", package_id=str(package_id))
            return
        if PackageStatus(package.status) in TERMINAL_PACKAGE_STATUSES:
            logger.warning("package_already_terminal", package_id=str(package_id), status=package.status)
            return
        package.status = PackageStatus.ERROR.value
        package.error_message = error_message
        package.last_modified_at = datetime.utcnow()
        session.commit()
        logger.error(
            "package_failed",
            package_id=str(package_id),
            error_message=error_message,
        )
    except Exception:
        session.rollback()
        logger.error("package_fail_update_failed", package_id=str(package_id))
        raise
    finally:
        session.close()
