"""
Referral Repository

Storage seam for referrals. The workflow service, the export pipeline and the
automation sweeps only talk to this interface, so the same logic runs against
Postgres/SQLite (SqlReferralRepository) or a process-local dict
(InMemoryReferralRepository).

Both implementations return immutable ``ReferralRead`` snapshots and support
optimistic concurrency on ``workflow_status``: an update with
``expected_status`` only applies if the stored status still matches.
"""

import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol
from uuid import UUID, uuid4

import structlog
from sqlalchemy import update as sql_update

from src.models.referral import (
    ClientState,
    Referral,
    ReferralCreate,
    ReferralRead,
    WorkflowStatus,
)

logger = structlog.get_logger(__name__)


# Columns callers may never overwrite through update()
_IMMUTABLE_COLUMNS = frozenset({"id", "created_at", "created_by"})
_REFERRAL_COLUMNS = frozenset(c.name for c in Referral.__table__.columns)


class ReferralNotFound(Exception):
    """Referral id does not exist."""
    pass


class ConcurrencyConflict(Exception):
    """Stored workflow status changed since it was read."""

    def __init__(self, referral_id, expected_status, actual_status=None):
        self.referral_id = str(referral_id)
        self.expected_status = _value(expected_status)
        self.actual_status = _value(actual_status)
        super().__init__(
            f"Referral {self.referral_id} changed concurrently: expected status "
            f"{self.expected_status}, found {self.actual_status}"
        )


def _value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return status.value if hasattr(status, "value") else str(status)


def _to_uuid(value: str | UUID) -> UUID:
    """Convert a string or UUID to a UUID object, raising ReferralNotFound."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ReferralNotFound(f"Referral {value} not found") from None


def _check_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _REFERRAL_COLUMNS
    if unknown:
        raise ValueError(f"Unknown referral columns: {sorted(unknown)}")
    immutable = set(fields) & _IMMUTABLE_COLUMNS
    if immutable:
        raise ValueError(f"Referral columns cannot be updated: {sorted(immutable)}")
    return {k: _value(v) if isinstance(v, (ClientState, WorkflowStatus)) else v for k, v in fields.items()}


def _matches(referral: ReferralRead, filters: dict[str, Any]) -> bool:
    for name, wanted in filters.items():
        actual = _value(getattr(referral, name))
        if isinstance(wanted, (list, tuple, set, frozenset)):
            if actual not in {_value(w) for w in wanted}:
                return False
        elif actual != _value(wanted):
            return False
    return True


class ReferralRepository(Protocol):
    """Interface consumed by the workflow, export and automation code."""

    def get(self, referral_id: str | UUID) -> ReferralRead: ...

    def update(
        self,
        referral_id: str | UUID,
        fields: dict[str, Any],
        actor_id: Optional[str] = None,
        expected_status: Optional[WorkflowStatus | str] = None,
        now: Optional[datetime] = None,
    ) -> ReferralRead: ...

    def list_all(self, filters: Optional[dict[str, Any]] = None) -> list[ReferralRead]: ...

    def create(self, data: ReferralCreate, created_by: Optional[str] = None) -> ReferralRead: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SqlReferralRepository:
    """Referral storage backed by the ``referrals`` table.

    Args:
        session_factory: SQLAlchemy session factory.
    """

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def get(self, referral_id: str | UUID) -> ReferralRead:
        session = self._session_factory()
        try:
            row = session.get(Referral, _to_uuid(referral_id))
            if row is None:
                raise ReferralNotFound(f"Referral {referral_id} not found")
            return ReferralRead.model_validate(row)
        finally:
            session.close()

    def update(
        self,
        referral_id: str | UUID,
        fields: dict[str, Any],
        actor_id: Optional[str] = None,
        expected_status: Optional[WorkflowStatus | str] = None,
        now: Optional[datetime] = None,
    ) -> ReferralRead:
        """
        Apply *fields* in a single conditional UPDATE.

        Raises:
            ReferralNotFound: No such referral.
            ConcurrencyConflict: ``expected_status`` given and no longer current.
        """
        rid = _to_uuid(referral_id)
        values = _check_fields(fields)
        values["last_modified_at"] = now or datetime.utcnow()
        values["last_modified_by"] = actor_id

        stmt = sql_update(Referral).where(Referral.id == rid)
        if expected_status is not None:
            stmt = stmt.where(Referral.workflow_status == _value(expected_status))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        session = self._session_factory()
        try:
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                row = session.get(Referral, rid)
                if row is None:
                    raise ReferralNotFound(f"Referral {referral_id} not found")
                raise ConcurrencyConflict(rid, expected_status, row.workflow_status)
            session.commit()
            row = session.get(Referral, rid)
            return ReferralRead.model_validate(row)
        except (ReferralNotFound, ConcurrencyConflict):
            raise
        except Exception:
            session.rollback()
            logger.error("referral_update_failed", referral_id=str(rid), fields=sorted(values))
            raise
        finally:
            session.close()

    def list_all(self, filters: Optional[dict[str, Any]] = None) -> list[ReferralRead]:
        """List referrals, optionally filtered by column equality (or membership
        when a filter value is a list)."""
        session = self._session_factory()
        try:
            query = session.query(Referral)
            for name, wanted in (filters or {}).items():
                if name not in _REFERRAL_COLUMNS:
                    raise ValueError(f"Unknown referral column: {name}")
                column = getattr(Referral, name)
                if isinstance(wanted, (list, tuple, set, frozenset)):
                    query = query.filter(column.in_([_value(w) for w in wanted]))
                else:
                    query = query.filter(column == _value(wanted))
            rows = query.order_by(Referral.created_at).all()
            return [ReferralRead.model_validate(r) for r in rows]
        finally:
            session.close()

    def create(self, data: ReferralCreate, created_by: Optional[str] = None) -> ReferralRead:
        now = datetime.utcnow()
        row = Referral(
            id=uuid4(),
            **data.model_dump(mode="json"),
            client_state=ClientState.PROSPECTIVE.value,
            workflow_status=WorkflowStatus.REFERRAL_SUBMITTED.value,
            matching_attempts=0,
            prestage_started_at=now,
            created_at=now,
            created_by=created_by,
            last_modified_at=now,
            last_modified_by=created_by,
        )
        session = self._session_factory()
        try:
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("referral_created", referral_id=str(row.id))
            return ReferralRead.model_validate(row)
        except Exception:
            session.rollback()
            logger.error("referral_create_failed")
            raise
        finally:
            session.close()


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryReferralRepository:
    """Dict-backed repository for tests and local runs."""

    def __init__(self, referrals: Optional[Iterable[ReferralRead]] = None):
        self._lock = threading.Lock()
        self._referrals: dict[UUID, ReferralRead] = {}
        for referral in referrals or ():
            self.add(referral)

    def add(self, referral: ReferralRead) -> ReferralRead:
        """Store a pre-built snapshot as-is."""
        with self._lock:
            self._referrals[referral.id] = referral
        return referral

    def get(self, referral_id: str | UUID) -> ReferralRead:
        with self._lock:
            referral = self._referrals.get(_to_uuid(referral_id))
        if referral is None:
            raise ReferralNotFound(f"Referral {referral_id} not found")
        return referral

    def update(
        self,
        referral_id: str | UUID,
        fields: dict[str, Any],
        actor_id: Optional[str] = None,
        expected_status: Optional[WorkflowStatus | str] = None,
        now: Optional[datetime] = None,
    ) -> ReferralRead:
        rid = _to_uuid(referral_id)
        values = _check_fields(fields)
        values["last_modified_at"] = now or datetime.utcnow()
        values["last_modified_by"] = actor_id

        with self._lock:
            current = self._referrals.get(rid)
            if current is None:
                raise ReferralNotFound(f"Referral {referral_id} not found")
            if expected_status is not None and current.workflow_status.value != _value(expected_status):
                raise ConcurrencyConflict(rid, expected_status, current.workflow_status)
            updated = ReferralRead.model_validate({**current.model_dump(), **values})
            self._referrals[rid] = updated
        return updated

    def list_all(self, filters: Optional[dict[str, Any]] = None) -> list[ReferralRead]:
        with self._lock:
            referrals = list(self._referrals.values())
        return [r for r in referrals if _matches(r, filters or {})]

    def create(self, data: ReferralCreate, created_by: Optional[str] = None) -> ReferralRead:
        now = datetime.utcnow()
        referral = ReferralRead(
            id=uuid4(),
            **data.model_dump(),
            client_state=ClientState.PROSPECTIVE,
            workflow_status=WorkflowStatus.REFERRAL_SUBMITTED,
            matching_attempts=0,
            prestage_started_at=now,
            created_at=now,
            created_by=created_by,
            last_modified_at=now,
            last_modified_by=created_by,
        )
        return self.add(referral)
