"""Parcel registry: registration, verification, search and deletion."""

from decimal import Decimal

import pytest
from conftest import parcel_attrs

from landregistry.errors import Conflict, NotFound, PermissionDenied, ValidationError
from landregistry.events import EventKind
from landregistry.schemas import ParcelDocumentType, ParcelStatus, TransferType, VerificationStatus


def test_create_parcel_starts_active_and_pending(registry, users, callers, publisher):
    parcel = registry.create_parcel(parcel_attrs(users["alice"].id), callers["official"])

    assert parcel.status == ParcelStatus.ACTIVE
    assert parcel.verification_status == VerificationStatus.PENDING
    assert parcel.owner_id == users["alice"].id
    assert parcel.postal_code == "560001"
    assert [e.kind for e in publisher.pending] == [EventKind.PARCEL_REGISTERED]


def test_create_parcel_requires_official(registry, users, callers):
    with pytest.raises(PermissionDenied):
        registry.create_parcel(parcel_attrs(users["alice"].id), callers["alice"])


@pytest.mark.parametrize(
    "overrides",
    [
        {"area": Decimal("0")},
        {"area": Decimal("0.001")},
        {"market_value": Decimal("-1")},
        {"market_value": Decimal("1.005")},
        {"plot_number": ""},
        {"land_type": "swamp"},
    ],
)
def test_create_parcel_rejects_bad_attributes(registry, users, callers, overrides):
    with pytest.raises(ValidationError):
        registry.create_parcel(parcel_attrs(users["alice"].id, **overrides), callers["official"])


def test_create_parcel_rejects_bad_location(registry, users, callers):
    attrs = parcel_attrs(users["alice"].id)
    attrs["location"]["postal_code"] = "5600"
    with pytest.raises(ValidationError, match="postal_code"):
        registry.create_parcel(attrs, callers["official"])

    attrs = parcel_attrs(users["alice"].id)
    attrs["location"]["latitude"] = Decimal("91")
    with pytest.raises(ValidationError, match="latitude"):
        registry.create_parcel(attrs, callers["official"])


def test_create_parcel_unknown_owner(registry, callers):
    import uuid

    with pytest.raises(ValidationError, match="Owner not found"):
        registry.create_parcel(parcel_attrs(uuid.uuid4()), callers["official"])


def test_duplicate_parcel_number_conflicts(registry, store, users, callers):
    registry.create_parcel(parcel_attrs(users["alice"].id), callers["official"])
    with pytest.raises(Conflict):
        registry.create_parcel(parcel_attrs(users["bob"].id), callers["official"])

    parcels, total = store.list_parcels()
    assert total == 1


def test_update_parcel_changes_allowed_fields(registry, parcel, callers):
    updated = registry.update_parcel(
        parcel.id,
        {"plot_number": "12B", "location": {"city": "Mysuru"}, "market_value": "6000000"},
        callers["official"],
    )

    assert updated.plot_number == "12B"
    assert updated.city == "Mysuru"
    assert updated.address == "14 Lake View Road"
    assert updated.market_value == Decimal("6000000")


def test_update_parcel_cannot_touch_identity_or_owner(registry, parcel, users, callers):
    with pytest.raises(ValidationError):
        registry.update_parcel(parcel.id, {"parcel_number": "OTHER"}, callers["official"])
    with pytest.raises(ValidationError):
        registry.update_parcel(parcel.id, {"owner_id": str(users["bob"].id)}, callers["official"])
    with pytest.raises(ValidationError):
        registry.update_parcel(parcel.id, {"status": "inactive"}, callers["official"])


def test_update_parcel_rejects_clearing_a_field(registry, parcel, callers):
    with pytest.raises(ValidationError, match="cannot be cleared"):
        registry.update_parcel(parcel.id, {"area": None}, callers["official"])


def test_area_is_stored_at_cent_precision(registry, store, session, users, callers):
    with pytest.raises(ValidationError, match="area"):
        registry.create_parcel(parcel_attrs(users["alice"].id, area=Decimal("0.001")), callers["official"])

    created = registry.create_parcel(parcel_attrs(users["alice"].id, area=Decimal("0.01")), callers["official"])
    with pytest.raises(ValidationError, match="area"):
        registry.update_parcel(created.id, {"area": "0.004"}, callers["official"])

    session.expire_all()
    assert store.get_parcel(created.id).area == Decimal("0.01")


def test_update_unknown_parcel(registry, callers):
    import uuid

    with pytest.raises(NotFound):
        registry.update_parcel(uuid.uuid4(), {"plot_number": "1"}, callers["official"])


def test_verify_is_idempotent(registry, users, callers):
    parcel = registry.create_parcel(parcel_attrs(users["alice"].id), callers["official"])

    once = registry.verify_parcel(parcel.id, "verified", callers["official"])
    state_once = (once.verification_status, once.verified_by_id, once.status, once.owner_id)
    twice = registry.verify_parcel(parcel.id, "verified", callers["official"])
    state_twice = (twice.verification_status, twice.verified_by_id, twice.status, twice.owner_id)

    assert state_once == state_twice == (
        VerificationStatus.VERIFIED, users["official"].id, ParcelStatus.ACTIVE, users["alice"].id
    )


def test_verify_requires_a_decision(registry, parcel, callers):
    with pytest.raises(ValidationError):
        registry.verify_parcel(parcel.id, "pending", callers["official"])
    with pytest.raises(PermissionDenied):
        registry.verify_parcel(parcel.id, "verified", callers["bob"])


def test_search_only_returns_verified_active_parcels(registry, workflow, users, callers):
    verified = registry.create_parcel(parcel_attrs(users["alice"].id, "SRV-1"), callers["official"])
    registry.verify_parcel(verified.id, "verified", callers["official"])
    registry.create_parcel(parcel_attrs(users["alice"].id, "SRV-2"), callers["official"])
    in_transfer = registry.create_parcel(parcel_attrs(users["alice"].id, "SRV-3"), callers["official"])
    registry.verify_parcel(in_transfer.id, "verified", callers["official"])
    workflow.initiate_transfer(in_transfer.id, callers["alice"], users["bob"].id, TransferType.GIFT)

    results = registry.search_parcels({"q": "srv"})

    assert [p.parcel_number for p in results] == ["SRV-1"]


def test_search_filters(registry, users, callers):
    for number, city, area, land_type in [
        ("A-1", "Pune", "500", "agricultural"),
        ("A-2", "Pune", "1500", "residential"),
        ("A-3", "Nashik", "2500", "residential"),
    ]:
        attrs = parcel_attrs(users["alice"].id, number, area=Decimal(area), land_type=land_type)
        attrs["location"]["city"] = city
        p = registry.create_parcel(attrs, callers["official"])
        registry.verify_parcel(p.id, "verified", callers["official"])

    assert {p.parcel_number for p in registry.search_parcels({"city": "pune"})} == {"A-1", "A-2"}
    assert {p.parcel_number for p in registry.search_parcels({"land_type": "residential"})} == {"A-2", "A-3"}
    assert {p.parcel_number for p in registry.search_parcels({"min_area": 1000, "max_area": 2000})} == {"A-2"}
    assert registry.search_parcels({"q": "lake view"})

    with pytest.raises(ValidationError):
        registry.search_parcels({"min_area": 10, "max_area": 5})


def test_search_treats_wildcards_literally(registry, users, callers):
    for number in ("LIT-1", "LIT_2"):
        p = registry.create_parcel(parcel_attrs(users["alice"].id, number), callers["official"])
        registry.verify_parcel(p.id, "verified", callers["official"])

    assert registry.search_parcels({"q": "%"}) == []
    assert [p.parcel_number for p in registry.search_parcels({"q": "_"})] == ["LIT_2"]
    assert [p.parcel_number for p in registry.search_parcels({"q": "lit_"})] == ["LIT_2"]
    assert registry.search_parcels({"city": "%"}) == []
    assert registry.search_parcels({"state": "kar_ataka"}) == []


def test_list_parcels_paginates_newest_first(registry, users, callers):
    for i in range(3):
        registry.create_parcel(parcel_attrs(users["alice"].id, f"L-{i}"), callers["official"])

    first, total = registry.list_parcels(page=1, limit=2)
    second, _ = registry.list_parcels(page=2, limit=2)

    assert total == 3
    assert len(first) == 2 and len(second) == 1
    assert {p.parcel_number for p in first + second} == {"L-0", "L-1", "L-2"}


def test_delete_parcel_without_transfers_is_hard(registry, store, parcel, callers):
    assert registry.delete_parcel(parcel.id, callers["admin"]) is True
    assert store.get_parcel(parcel.id) is None


def test_delete_requires_admin(registry, parcel, callers):
    with pytest.raises(PermissionDenied):
        registry.delete_parcel(parcel.id, callers["official"])


def test_delete_with_open_transfer_conflicts(registry, workflow, store, parcel, users, callers):
    workflow.initiate_transfer(parcel.id, callers["alice"], users["bob"].id, TransferType.GIFT)

    with pytest.raises(Conflict):
        registry.delete_parcel(parcel.id, callers["admin"])
    assert store.get_parcel(parcel.id).status == ParcelStatus.UNDER_TRANSFER


def test_delete_with_past_transfers_deactivates(registry, workflow, store, parcel, users, callers):
    t = workflow.initiate_transfer(parcel.id, callers["alice"], users["bob"].id, TransferType.GIFT)
    workflow.cancel_transfer(t.id, callers["alice"])

    assert registry.delete_parcel(parcel.id, callers["admin"]) is False
    assert store.get_parcel(parcel.id).status == ParcelStatus.INACTIVE


def test_add_document_by_owner_or_official(registry, parcel, callers):
    doc = registry.add_document(
        parcel.id,
        {"doc_type": "sale_deed", "content_hash": "Qm123", "storage_locator": "ipfs://Qm123"},
        callers["alice"],
    )
    registry.add_document(
        parcel.id, {"content_hash": "abc", "storage_locator": "s3://bucket/abc"}, callers["official"]
    )

    assert doc.doc_type == ParcelDocumentType.SALE_DEED
    assert [d.content_hash for d in registry.get_parcel(parcel.id).documents] == ["Qm123", "abc"]

    with pytest.raises(PermissionDenied):
        registry.add_document(
            parcel.id, {"content_hash": "x", "storage_locator": "y"}, callers["bob"]
        )
