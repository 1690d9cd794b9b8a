"""Ownership history derivation."""

import uuid
from datetime import datetime

import pytest

from landregistry.errors import NotFound
from landregistry.history import build_history, current_interval_start, ownership_history
from landregistry.models import PreviousOwner
from landregistry.schemas import TransferType


def test_fresh_parcel_has_single_current_entry(store, parcel, users):
    history = build_history(store, parcel.id)

    assert history.parcel_number == "SRV-1001"
    assert len(history.history) == 1
    entry = history.history[0]
    assert entry.owner.id == users["alice"].id
    assert entry.from_date == datetime(2020, 1, 15)
    assert entry.to_date is None
    assert entry.is_current


def test_current_interval_starts_at_last_closed_interval(session, store, parcel, users):
    p = store.get_parcel(parcel.id)
    p.previous_owners.extend([
        PreviousOwner(owner_id=users["carol"].id, from_date=datetime(2021, 1, 1), to_date=datetime(2022, 6, 1)),
        PreviousOwner(owner_id=users["bob"].id, from_date=datetime(2020, 1, 15), to_date=datetime(2021, 1, 1)),
    ])
    session.commit()

    assert current_interval_start(p) == datetime(2022, 6, 1)
    entries = ownership_history(p)
    assert [e.from_date for e in entries] == [
        datetime(2020, 1, 15), datetime(2021, 1, 1), datetime(2022, 6, 1)
    ]
    assert [e.is_current for e in entries] == [False, False, True]


def test_history_after_approval(store, workflow, parcel, users, callers):
    t = workflow.initiate_transfer(parcel.id, callers["alice"], users["bob"].id, TransferType.GIFT)
    workflow.approve_transfer(t.id, callers["official"])

    history = build_history(store, parcel.id).history

    assert [(e.owner.id, e.is_current) for e in history] == [
        (users["alice"].id, False),
        (users["bob"].id, True),
    ]
    assert history[0].to_date == history[1].from_date


def test_history_unknown_parcel(store):
    with pytest.raises(NotFound):
        build_history(store, uuid.uuid4())
