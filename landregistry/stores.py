"""Storage backends for the parcel registry and transfer workflow.

The workflow engine talks to a `RegistryStore`. Every state transition runs
inside `unit_of_work()`: the engine locks and re-reads the parcel, checks its
preconditions, stages the changes, flushes, and finally calls
`anchor_transition()` before the commit. A SQL deployment does nothing in
the anchor step; a ledger deployment (see ledger.py) submits the matching
contract call there and only lets the commit happen once it is confirmed.

Any exception inside the unit rolls the session back, so callers observe
either the whole transition or none of it.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import Conflict, RegistryError, StorageFailure
from .models import Parcel, Transfer, User
from .schemas import (
    OPEN_TRANSFER_STATUSES,
    ParcelSearch,
    ParcelStatus,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


class Transition(str, Enum):
    """State transitions that must be anchored atomically."""

    REGISTER = "register"
    INITIATE = "initiate"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


class RegistryStore(ABC):
    """Persistence boundary used by ParcelRegistry and TransferWorkflow."""

    def __init__(self, session: Session):
        self.session = session

    # --- unit of work -------------------------------------------------------

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Commit on success, roll back on any error.

        Registry errors pass through unchanged. Integrity violations (the
        unique parcel number, the one-open-transfer index) become Conflict;
        any other database error becomes StorageFailure.
        """
        try:
            yield self.session
            self.session.commit()
        except RegistryError:
            self.session.rollback()
            raise
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Integrity violation rolled back: {e.orig}")
            raise Conflict("Operation conflicts with an existing record") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.exception("Database error, transaction rolled back")
            raise StorageFailure("Storage is temporarily unavailable") from e
        except Exception:
            self.session.rollback()
            raise

    def add(self, obj) -> None:
        self.session.add(obj)

    def delete(self, obj) -> None:
        self.session.delete(obj)

    def flush(self) -> None:
        self.session.flush()

    @abstractmethod
    def anchor_transition(
        self,
        transition: Transition,
        parcel: Parcel,
        transfer: Transfer | None = None,
        **details,
    ) -> str | None:
        """Make a staged transition durable outside the database, if needed.

        Called inside the unit of work after the database changes are
        flushed. Returns a transaction reference (or None). Raising aborts
        the whole unit.
        """

    # --- users --------------------------------------------------------------

    def get_user(self, user_id: UUID) -> User | None:
        return self.session.get(User, user_id)

    # --- parcels ------------------------------------------------------------

    def get_parcel(self, parcel_id: UUID, for_update: bool = False) -> Parcel | None:
        if for_update:
            # Re-read under a row lock so concurrent transitions serialize
            return self.session.get(Parcel, parcel_id, with_for_update=True, populate_existing=True)
        return self.session.get(Parcel, parcel_id)

    def get_parcel_by_number(self, parcel_number: str) -> Parcel | None:
        return self.session.execute(
            select(Parcel).where(Parcel.parcel_number == parcel_number)
        ).scalar_one_or_none()

    def list_parcels(self, offset: int = 0, limit: int = 10) -> tuple[list[Parcel], int]:
        total = self.session.execute(select(func.count(Parcel.id))).scalar() or 0
        items = self.session.execute(
            select(Parcel).order_by(Parcel.created_at.desc()).offset(offset).limit(limit)
        ).scalars().all()
        return list(items), total

    def search_parcels(self, filters: ParcelSearch, limit: int) -> list[Parcel]:
        query = select(Parcel).where(
            Parcel.verification_status == VerificationStatus.VERIFIED,
            Parcel.status == ParcelStatus.ACTIVE,
        )

        if filters.q:
            pattern = _contains(filters.q)
            query = query.where(
                or_(
                    Parcel.parcel_number.ilike(pattern, escape="\\"),
                    Parcel.plot_number.ilike(pattern, escape="\\"),
                    Parcel.address.ilike(pattern, escape="\\"),
                )
            )
        if filters.city:
            query = query.where(Parcel.city.ilike(_contains(filters.city), escape="\\"))
        if filters.state:
            query = query.where(Parcel.state.ilike(_contains(filters.state), escape="\\"))
        if filters.land_type:
            query = query.where(Parcel.land_type == filters.land_type)
        if filters.min_area is not None:
            query = query.where(Parcel.area >= filters.min_area)
        if filters.max_area is not None:
            query = query.where(Parcel.area <= filters.max_area)

        query = query.order_by(Parcel.created_at.desc()).limit(limit)
        return list(self.session.execute(query).scalars().all())

    # --- transfers ----------------------------------------------------------

    def get_transfer(self, transfer_id: UUID, for_update: bool = False) -> Transfer | None:
        if for_update:
            return self.session.get(Transfer, transfer_id, with_for_update=True, populate_existing=True)
        return self.session.get(Transfer, transfer_id)

    def open_transfer(self, parcel_id: UUID) -> Transfer | None:
        """The single initiated/pending transfer of a parcel, if any."""
        return self.session.execute(
            select(Transfer).where(
                Transfer.parcel_id == parcel_id,
                Transfer.status.in_(OPEN_TRANSFER_STATUSES),
            )
        ).scalars().first()

    def transfers_for_parcel(self, parcel_id: UUID) -> list[Transfer]:
        return list(self.session.execute(
            select(Transfer)
            .where(Transfer.parcel_id == parcel_id)
            .order_by(Transfer.created_at.asc())
        ).scalars().all())

    def transfers_for_user(self, user_id: UUID) -> list[Transfer]:
        return list(self.session.execute(
            select(Transfer)
            .where(or_(Transfer.from_owner_id == user_id, Transfer.to_owner_id == user_id))
            .order_by(Transfer.created_at.desc())
        ).scalars().all())

    def all_transfers(self) -> list[Transfer]:
        return list(self.session.execute(
            select(Transfer).order_by(Transfer.created_at.desc())
        ).scalars().all())

    def has_transfers(self, parcel_id: UUID) -> bool:
        count = self.session.execute(
            select(func.count(Transfer.id)).where(Transfer.parcel_id == parcel_id)
        ).scalar()
        return bool(count)


def _contains(value: str) -> str:
    """ILIKE pattern matching `value` as a literal substring."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SqlStore(RegistryStore):
    """Database-only backend. The database transaction is the atomic unit."""

    def anchor_transition(self, transition, parcel, transfer=None, **details) -> str | None:
        logger.debug(f"{transition.value} for parcel {parcel.parcel_number} committed in database only")
        return None
