"""Parcel registry: custody and verification of parcel records."""

import logging
import os
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .authority import Action, Caller, authorize
from .errors import Conflict, NotFound, ValidationError
from .events import EventKind, EventPublisher, RegistryEvent
from .models import Parcel, ParcelDocument, naive_utc, utcnow
from .schemas import (
    DocumentCreate,
    ParcelCreate,
    ParcelSearch,
    ParcelStatus,
    ParcelUpdate,
    VerificationStatus,
)
from .stores import RegistryStore, Transition

logger = logging.getLogger(__name__)

SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", "50"))


def coerce(model: type[BaseModel], attrs: Any) -> Any:
    """Validate a dict against `model`; pass model instances through."""
    if isinstance(attrs, model):
        return attrs
    try:
        return model.model_validate(attrs)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or "input"
        raise ValidationError(f"{field}: {first['msg']}") from e


class ParcelRegistry:
    """CRUD-style custody of Parcel records.

    Parcel status is never written here except for soft deletion; the
    under_transfer/active flip belongs to the transfer workflow.
    """

    def __init__(self, store: RegistryStore, events: EventPublisher | None = None):
        self.store = store
        self.events = events or EventPublisher()

    def create_parcel(self, attrs: ParcelCreate | dict, caller: Caller) -> Parcel:
        authorize(caller, Action.CREATE_PARCEL)
        data = coerce(ParcelCreate, attrs)

        with self.store.unit_of_work():
            if self.store.get_user(data.owner_id) is None:
                raise ValidationError("Owner not found")
            if self.store.get_parcel_by_number(data.parcel_number) is not None:
                raise Conflict(f"Parcel {data.parcel_number} is already registered")

            parcel = Parcel(
                parcel_number=data.parcel_number,
                plot_number=data.plot_number,
                owner_id=data.owner_id,
                address=data.location.address,
                city=data.location.city,
                state=data.location.state,
                postal_code=data.location.postal_code,
                lat=data.location.latitude,
                lng=data.location.longitude,
                area=data.area,
                land_type=data.land_type,
                market_value=data.market_value,
                registration_date=naive_utc(data.registration_date),
                verification_status=VerificationStatus.PENDING,
                status=ParcelStatus.ACTIVE,
            )
            self.store.add(parcel)
            self.store.flush()
            self.store.anchor_transition(Transition.REGISTER, parcel)

        logger.info(f"Registered parcel {parcel.parcel_number} for owner {parcel.owner_id}")
        self.events.publish(RegistryEvent(
            kind=EventKind.PARCEL_REGISTERED,
            parcel_id=parcel.id,
            actor_id=caller.id,
            data={"parcel_number": parcel.parcel_number},
        ))
        return parcel

    def update_parcel(self, parcel_id: UUID, attrs: ParcelUpdate | dict, caller: Caller) -> Parcel:
        authorize(caller, Action.UPDATE_PARCEL)
        data = coerce(ParcelUpdate, attrs)

        with self.store.unit_of_work():
            parcel = self._require(parcel_id, for_update=True)
            changes = data.model_dump(exclude_unset=True, exclude={"location"})
            for field, value in changes.items():
                if value is None:
                    raise ValidationError(f"{field} cannot be cleared")
                setattr(parcel, field, value)

            if data.location is not None:
                location = data.location.model_dump(exclude_unset=True)
                for field, column in (
                    ("address", "address"), ("city", "city"), ("state", "state"),
                    ("postal_code", "postal_code"), ("latitude", "lat"), ("longitude", "lng"),
                ):
                    if field in location:
                        if location[field] is None:
                            raise ValidationError(f"location.{field} cannot be cleared")
                        setattr(parcel, column, location[field])

        logger.info(f"Updated parcel {parcel.parcel_number}")
        return parcel

    def verify_parcel(self, parcel_id: UUID, decision: VerificationStatus | str, caller: Caller) -> Parcel:
        """Record an official's verification decision. Re-verifying overwrites."""
        authorize(caller, Action.VERIFY_PARCEL)
        try:
            decision = VerificationStatus(decision)
        except ValueError:
            raise ValidationError(f"Unknown verification status {decision!r}")
        if decision == VerificationStatus.PENDING:
            raise ValidationError("verification decision must be 'verified' or 'rejected'")

        with self.store.unit_of_work():
            parcel = self._require(parcel_id, for_update=True)
            parcel.verification_status = decision
            parcel.verified_by_id = caller.id
            parcel.verified_at = utcnow()

        logger.info(f"Parcel {parcel.parcel_number} {decision.value} by {caller.id}")
        self.events.publish(RegistryEvent(
            kind=EventKind.PARCEL_VERIFIED,
            parcel_id=parcel.id,
            actor_id=caller.id,
            data={"verification_status": decision.value},
        ))
        return parcel

    def get_parcel(self, parcel_id: UUID) -> Parcel:
        return self._require(parcel_id)

    def list_parcels(self, page: int = 1, limit: int = 10) -> tuple[list[Parcel], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        return self.store.list_parcels(offset=(page - 1) * limit, limit=min(limit, 100))

    def search_parcels(self, filters: ParcelSearch | dict | None = None) -> list[Parcel]:
        filters = coerce(ParcelSearch, filters or {})
        return self.store.search_parcels(filters, limit=SEARCH_LIMIT)

    def delete_parcel(self, parcel_id: UUID, caller: Caller) -> bool:
        """Remove a parcel. Returns True if hard-deleted, False if deactivated.

        Parcels that any transfer references are only deactivated, and a
        parcel with an open transfer cannot be removed at all.
        """
        authorize(caller, Action.DELETE_PARCEL)

        with self.store.unit_of_work():
            parcel = self._require(parcel_id, for_update=True)
            if self.store.open_transfer(parcel.id) is not None:
                raise Conflict("Land has a pending transfer and cannot be deleted")

            if self.store.has_transfers(parcel.id):
                parcel.status = ParcelStatus.INACTIVE
                hard_deleted = False
            else:
                self.store.delete(parcel)
                hard_deleted = True

        logger.info(
            f"Parcel {parcel_id} {'deleted' if hard_deleted else 'deactivated'} by {caller.id}"
        )
        return hard_deleted

    def add_document(self, parcel_id: UUID, document: DocumentCreate | dict, caller: Caller) -> ParcelDocument:
        data = coerce(DocumentCreate, document)

        with self.store.unit_of_work():
            parcel = self._require(parcel_id, for_update=True)
            authorize(caller, Action.ADD_DOCUMENT, parcel)
            doc = ParcelDocument(
                doc_type=data.doc_type,
                content_hash=data.content_hash,
                storage_locator=data.storage_locator,
                uploaded_by_id=caller.id,
                uploaded_at=utcnow(),
            )
            parcel.documents.append(doc)

        logger.info(f"Document {data.doc_type.value} attached to parcel {parcel.parcel_number}")
        return doc

    def _require(self, parcel_id: UUID, for_update: bool = False) -> Parcel:
        parcel = self.store.get_parcel(parcel_id, for_update=for_update)
        if parcel is None:
            raise NotFound("Land not found")
        return parcel
