"""Transfer workflow engine.

One state machine drives both the Transfer record and its Parcel's status:

    parcel:   active --initiate--> under_transfer --approve/reject/cancel--> active
    transfer: pending_approval --approve--> approved --> completed
                               --reject---> rejected
              initiated | pending_approval --cancel--> cancelled

Invariants held by every method:
- a parcel is under_transfer iff it has exactly one open transfer
- a parcel has at most one open transfer (row lock + partial unique index)
- fees_total == stamp_duty + registration_fee + other_charges (model hook)
- a failed call changes nothing: all preconditions are checked inside the
  unit of work before any write, and any error rolls the unit back

Approval is single-step. The approvals list is an audit trail, not a quorum,
and approval cascades straight to completion in the same unit of work.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from .authority import Action, Caller, authorize, can
from .errors import Conflict, InvalidState, NotFound, ValidationError
from .events import EventKind, EventPublisher, RegistryEvent
from .history import current_interval_start
from .models import (
    CENT,
    Parcel,
    PreviousOwner,
    Transfer,
    TransferApproval,
    TransferDocument,
    naive_utc,
    utcnow,
)
from .registry import coerce
from .schemas import (
    FeeInput,
    ParcelStatus,
    TransferDocumentCreate,
    TransferStatus,
    TransferType,
)
from .stores import RegistryStore, Transition

logger = logging.getLogger(__name__)

# Largest amount the Numeric(14, 2) money columns hold
MAX_AMOUNT = Decimal("999999999999.99")


def parse_amount(value, label: str) -> Decimal:
    """Money amount as a Decimal with at most two decimal places."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{label} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{label} must be a number")
    if amount < 0:
        raise ValidationError(f"{label} must be greater than or equal to 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{label} is too large")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{label} cannot have more than 2 decimal places")
    return amount


class TransferWorkflow:
    """The authoritative transfer state machine, independent of the backend."""

    def __init__(self, store: RegistryStore, events: EventPublisher | None = None):
        self.store = store
        self.events = events or EventPublisher()

    # =========================================================================
    # Transitions
    # =========================================================================

    def initiate_transfer(
        self,
        parcel_id: UUID,
        caller: Caller,
        to_owner_id: UUID,
        transfer_type: TransferType | str,
        sale_price: Decimal | None = None,
        transfer_date: datetime | None = None,
        fees: FeeInput | dict | None = None,
    ) -> Transfer:
        """Owner asks to hand the parcel to `to_owner_id`.

        Raises NotFound (parcel), PermissionDenied (caller is not the owner),
        ValidationError (recipient, type, sale price, fees) or Conflict
        (parcel not active or already has an open transfer).
        """
        with self.store.unit_of_work():
            parcel = self._require_parcel(parcel_id)
            authorize(caller, Action.INITIATE_TRANSFER, parcel)

            if to_owner_id == parcel.owner_id:
                raise ValidationError("Land cannot be transferred to its current owner")
            if self.store.get_user(to_owner_id) is None:
                raise ValidationError("Recipient not found")

            try:
                transfer_type = TransferType(transfer_type)
            except ValueError:
                raise ValidationError(f"Unknown transfer type {transfer_type!r}")
            if sale_price is not None:
                sale_price = parse_amount(sale_price, "Sale price")
            if transfer_type == TransferType.SALE and not sale_price:
                raise ValidationError("Sale price is required for sale transfers")
            fee_input = coerce(FeeInput, fees or {})

            if self.store.open_transfer(parcel.id) is not None:
                raise Conflict("Land already has a pending transfer")
            if parcel.status != ParcelStatus.ACTIVE:
                raise Conflict("Land is not available for transfer")

            transfer = Transfer(
                parcel_id=parcel.id,
                from_owner_id=parcel.owner_id,
                to_owner_id=to_owner_id,
                initiated_by_id=caller.id,
                transfer_type=transfer_type,
                sale_price=sale_price,
                transfer_date=naive_utc(transfer_date) if transfer_date else utcnow(),
                status=TransferStatus.PENDING_APPROVAL,
                stamp_duty=fee_input.stamp_duty,
                registration_fee=fee_input.registration_fee,
                other_charges=fee_input.other_charges,
            )
            transfer.recompute_fees()
            self.store.add(transfer)
            parcel.status = ParcelStatus.UNDER_TRANSFER
            self.store.flush()
            self.store.anchor_transition(Transition.INITIATE, parcel, transfer)

        logger.info(
            f"Transfer {transfer.id} initiated: parcel {parcel.parcel_number} "
            f"{transfer.from_owner_id} -> {transfer.to_owner_id} ({transfer_type.value})"
        )
        self._publish(EventKind.TRANSFER_INITIATED, transfer, caller, {
            "to_owner_id": str(transfer.to_owner_id),
            "transfer_type": transfer_type.value,
        })
        return transfer

    def approve_transfer(self, transfer_id: UUID, caller: Caller, comment: str | None = None) -> Transfer:
        """Official approval. Completes the ownership change immediately."""
        authorize(caller, Action.APPROVE_TRANSFER)

        with self.store.unit_of_work():
            transfer, parcel = self._load_for_transition(transfer_id)
            if transfer.status != TransferStatus.PENDING_APPROVAL:
                raise InvalidState("Transfer is not pending approval")

            now = utcnow()
            transfer.approvals.append(
                TransferApproval(approver_id=caller.id, approved_at=now, comment=comment)
            )
            transfer.status = TransferStatus.APPROVED

            previous_owner_id = parcel.owner_id
            parcel.previous_owners.append(
                PreviousOwner(
                    owner_id=previous_owner_id,
                    from_date=current_interval_start(parcel),
                    to_date=now,
                )
            )
            parcel.owner_id = transfer.to_owner_id
            parcel.status = ParcelStatus.ACTIVE
            transfer.status = TransferStatus.COMPLETED
            transfer.completed_at = now

            self.store.flush()
            self.store.anchor_transition(Transition.APPROVE, parcel, transfer)

        logger.info(
            f"Transfer {transfer.id} approved by {caller.id}: parcel {parcel.parcel_number} "
            f"now owned by {parcel.owner_id}"
        )
        self._publish(EventKind.OWNERSHIP_CHANGED, transfer, caller, {
            "previous_owner_id": str(previous_owner_id),
            "new_owner_id": str(parcel.owner_id),
        })
        return transfer

    def reject_transfer(self, transfer_id: UUID, caller: Caller, reason: str) -> Transfer:
        authorize(caller, Action.REJECT_TRANSFER)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required")

        with self.store.unit_of_work():
            transfer, parcel = self._load_for_transition(transfer_id)
            if transfer.status != TransferStatus.PENDING_APPROVAL:
                raise InvalidState("Transfer is not pending approval")

            transfer.status = TransferStatus.REJECTED
            transfer.rejection_reason = reason
            parcel.status = ParcelStatus.ACTIVE

            self.store.flush()
            self.store.anchor_transition(Transition.REJECT, parcel, transfer)

        logger.info(f"Transfer {transfer.id} rejected by {caller.id}: {reason}")
        self._publish(EventKind.TRANSFER_REJECTED, transfer, caller, {"reason": reason})
        return transfer

    def cancel_transfer(self, transfer_id: UUID, caller: Caller) -> Transfer:
        """Initiator withdraws a transfer that has not been decided yet."""
        with self.store.unit_of_work():
            transfer, parcel = self._load_for_transition(transfer_id)
            authorize(caller, Action.CANCEL_TRANSFER, transfer)
            if not transfer.is_open:
                raise InvalidState("Transfer cannot be cancelled at this stage")

            transfer.status = TransferStatus.CANCELLED
            parcel.status = ParcelStatus.ACTIVE

            self.store.flush()
            self.store.anchor_transition(Transition.CANCEL, parcel, transfer)

        logger.info(f"Transfer {transfer.id} cancelled by {caller.id}")
        self._publish(EventKind.TRANSFER_CANCELLED, transfer, caller, {})
        return transfer

    def add_transfer_document(
        self, transfer_id: UUID, document: TransferDocumentCreate | dict, caller: Caller
    ) -> TransferDocument:
        """File a supporting document with a transfer that is still open."""
        data = coerce(TransferDocumentCreate, document)

        with self.store.unit_of_work():
            transfer, _ = self._load_for_transition(transfer_id)
            authorize(caller, Action.ADD_TRANSFER_DOCUMENT, transfer)
            if not transfer.is_open:
                raise InvalidState("Documents can only be added while the transfer is pending")

            doc = TransferDocument(
                doc_type=data.doc_type,
                content_hash=data.content_hash,
                storage_locator=data.storage_locator,
                uploaded_by_id=caller.id,
                uploaded_at=utcnow(),
            )
            transfer.documents.append(doc)

        logger.info(f"Document {data.doc_type.value} attached to transfer {transfer.id}")
        return doc

    # =========================================================================
    # Queries
    # =========================================================================

    def get_transfer(self, transfer_id: UUID, caller: Caller) -> Transfer:
        transfer = self.store.get_transfer(transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        authorize(caller, Action.VIEW_TRANSFER, transfer)
        return transfer

    def list_transfers(self, caller: Caller, mine: bool = False) -> list[Transfer]:
        """Newest first. Officials see everything unless they ask for `mine`."""
        if mine or not can(caller, Action.VIEW_ALL_TRANSFERS):
            return self.store.transfers_for_user(caller.id)
        return self.store.all_transfers()

    def get_pending_transfer(self, parcel_id: UUID) -> Transfer | None:
        self._require_parcel(parcel_id, for_update=False)
        return self.store.open_transfer(parcel_id)

    def get_transfer_history(self, parcel_id: UUID) -> list[Transfer]:
        """Every transfer of the parcel, oldest first, whatever its outcome."""
        self._require_parcel(parcel_id, for_update=False)
        return self.store.transfers_for_parcel(parcel_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_parcel(self, parcel_id: UUID, for_update: bool = True) -> Parcel:
        parcel = self.store.get_parcel(parcel_id, for_update=for_update)
        if parcel is None:
            raise NotFound("Land not found")
        return parcel

    def _load_for_transition(self, transfer_id: UUID) -> tuple[Transfer, Parcel]:
        # Lock the parcel first: it is the unit of mutual exclusion
        transfer = self.store.get_transfer(transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        parcel = self._require_parcel(transfer.parcel_id)
        transfer = self.store.get_transfer(transfer_id, for_update=True)
        return transfer, parcel

    def _publish(self, kind: EventKind, transfer: Transfer, caller: Caller, data: dict) -> None:
        self.events.publish(RegistryEvent(
            kind=kind,
            parcel_id=transfer.parcel_id,
            transfer_id=transfer.id,
            actor_id=caller.id,
            data=data,
        ))
