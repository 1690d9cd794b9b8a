"""Ownership timeline of a parcel.

Read-only. The closed intervals are the parcel's previous-owner rows (written
by the workflow when a transfer completes); the current owner's open interval
is synthesized on every query.
"""

from datetime import datetime
from uuid import UUID

from .errors import NotFound
from .models import Parcel
from .schemas import OwnershipHistory, OwnershipHistoryEntry, UserSummary
from .stores import RegistryStore


def current_interval_start(parcel: Parcel) -> datetime:
    """When the current owner's interval began.

    The end of the latest closed interval, or the registration date if the
    parcel has never changed hands.
    """
    if parcel.previous_owners:
        return max(p.to_date for p in parcel.previous_owners)
    return parcel.registration_date


def ownership_history(parcel: Parcel) -> list[OwnershipHistoryEntry]:
    entries = [
        OwnershipHistoryEntry(
            owner=UserSummary.from_model(prev.owner),
            from_date=prev.from_date,
            to_date=prev.to_date,
            is_current=False,
        )
        for prev in parcel.previous_owners
    ]
    entries.append(
        OwnershipHistoryEntry(
            owner=UserSummary.from_model(parcel.owner),
            from_date=current_interval_start(parcel),
            to_date=None,
            is_current=True,
        )
    )
    return sorted(entries, key=lambda e: e.from_date)


def build_history(store: RegistryStore, parcel_id: UUID) -> OwnershipHistory:
    parcel = store.get_parcel(parcel_id)
    if parcel is None:
        raise NotFound("Land not found")

    return OwnershipHistory(
        parcel_id=parcel.id,
        parcel_number=parcel.parcel_number,
        plot_number=parcel.plot_number,
        history=ownership_history(parcel),
    )
