"""SQLAlchemy models for the land registry.

Data Architecture Overview:
- Parcel is the unit of custody. It owns its documents and previous-owner rows.
- Transfer is one ownership-change attempt. It points at its Parcel; the
  Parcel only carries a status, never a pointer back to its pending Transfer.
  The open transfer of a parcel is found by an indexed lookup on parcel_id.
  A Transfer owns its approvals and its supporting documents.
- At most one open (initiated / pending_approval) Transfer per parcel, enforced
  by a partial unique index on top of the row lock taken by the workflow.

Fee totals are recomputed from their components on every insert/update,
with each component rounded to cents first.
"""

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    OPEN_TRANSFER_STATUSES,
    LandType,
    ParcelDocumentType,
    ParcelStatus,
    Role,
    TransferDocumentType,
    TransferStatus,
    TransferType,
    VerificationStatus,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


CENT = Decimal("0.01")


def to_cents(value) -> Decimal:
    """Round a money amount to the scale of the Numeric(14, 2) columns."""
    return Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)


def _enum(enum_cls: type) -> SQLEnum:
    # Persist the lowercase values ("under_transfer"), not the member names
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


_OPEN_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in OPEN_TRANSFER_STATUSES)
)


class User(Base):
    """An identity known to the registry.

    Authentication happens elsewhere; the registry only needs the id, the
    role and (for ledger-backed deployments) a wallet address.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[Role] = mapped_column(_enum(Role), default=Role.CITIZEN, nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(
        String(42), unique=True,
        doc="0x-prefixed account address used when transitions are anchored on-chain"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value})>"


class Parcel(Base):
    """A registered piece of land."""

    __tablename__ = "parcels"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    parcel_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True,
        doc="Survey number. Immutable after registration; also the on-chain key."
    )
    plot_number: Mapped[str] = mapped_column(String(50), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )

    # Location
    address: Mapped[str] = mapped_column(String(200), nullable=False)
    city: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    postal_code: Mapped[str] = mapped_column(String(6), nullable=False)
    lat: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)
    lng: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)

    area: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    land_type: Mapped[LandType] = mapped_column(_enum(LandType), nullable=False)
    market_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    registration_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Verification
    verification_status: Mapped[VerificationStatus] = mapped_column(
        _enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False, index=True
    )
    verified_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id"))
    verified_at: Mapped[datetime | None] = mapped_column(DateTime)

    status: Mapped[ParcelStatus] = mapped_column(
        _enum(ParcelStatus), default=ParcelStatus.ACTIVE, nullable=False, index=True,
        doc="under_transfer iff exactly one open Transfer references this parcel"
    )
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner: Mapped["User"] = relationship("User", foreign_keys=[owner_id])
    verified_by: Mapped["User"] = relationship("User", foreign_keys=[verified_by_id])
    documents: Mapped[list["ParcelDocument"]] = relationship(
        "ParcelDocument", back_populates="parcel",
        cascade="all, delete-orphan", order_by="ParcelDocument.uploaded_at"
    )
    previous_owners: Mapped[list["PreviousOwner"]] = relationship(
        "PreviousOwner", back_populates="parcel",
        cascade="all, delete-orphan", order_by="PreviousOwner.from_date"
    )

    def __repr__(self) -> str:
        return f"<Parcel {self.parcel_number}: {self.status.value}>"


class ParcelDocument(Base):
    """A document reference attached to a parcel."""

    __tablename__ = "parcel_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    parcel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("parcels.id"), nullable=False, index=True
    )
    doc_type: Mapped[ParcelDocumentType] = mapped_column(
        _enum(ParcelDocumentType), default=ParcelDocumentType.OTHER, nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    storage_locator: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    parcel: Mapped["Parcel"] = relationship("Parcel", back_populates="documents")

    def __repr__(self) -> str:
        return f"<ParcelDocument {self.doc_type.value} {self.content_hash[:12]}>"


class PreviousOwner(Base):
    """A closed ownership interval, written when a transfer completes."""

    __tablename__ = "previous_owners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    parcel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("parcels.id"), nullable=False, index=True
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    from_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    to_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    parcel: Mapped["Parcel"] = relationship("Parcel", back_populates="previous_owners")
    owner: Mapped["User"] = relationship("User")

    def __repr__(self) -> str:
        return f"<PreviousOwner {self.owner_id} {self.from_date:%Y-%m-%d}..{self.to_date:%Y-%m-%d}>"


class Transfer(Base):
    """One attempt to change a parcel's owner."""

    __tablename__ = "transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    parcel_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("parcels.id"), nullable=False, index=True
    )
    from_owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    to_owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    initiated_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    transfer_type: Mapped[TransferType] = mapped_column(_enum(TransferType), nullable=False)
    sale_price: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        doc="Required and > 0 for sales; optional otherwise"
    )
    transfer_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[TransferStatus] = mapped_column(
        _enum(TransferStatus), default=TransferStatus.PENDING_APPROVAL, nullable=False, index=True
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    # Fees
    stamp_duty: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    registration_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    other_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    fees_total: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False,
        doc="Always stamp_duty + registration_fee + other_charges"
    )

    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    parcel: Mapped["Parcel"] = relationship("Parcel")
    from_owner: Mapped["User"] = relationship("User", foreign_keys=[from_owner_id])
    to_owner: Mapped["User"] = relationship("User", foreign_keys=[to_owner_id])
    approvals: Mapped[list["TransferApproval"]] = relationship(
        "TransferApproval", back_populates="transfer",
        cascade="all, delete-orphan", order_by="TransferApproval.approved_at"
    )
    documents: Mapped[list["TransferDocument"]] = relationship(
        "TransferDocument", back_populates="transfer",
        cascade="all, delete-orphan", order_by="TransferDocument.uploaded_at"
    )

    __table_args__ = (
        Index(
            "uq_transfers_open_per_parcel",
            "parcel_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TRANSFER_STATUSES

    def recompute_fees(self) -> None:
        # Components are rounded first so the stored total equals the stored sum
        self.stamp_duty = to_cents(self.stamp_duty)
        self.registration_fee = to_cents(self.registration_fee)
        self.other_charges = to_cents(self.other_charges)
        self.fees_total = self.stamp_duty + self.registration_fee + self.other_charges

    def __repr__(self) -> str:
        return f"<Transfer {self.id} {self.transfer_type.value} {self.status.value}>"


class TransferApproval(Base):
    """Audit entry for an official's approval. Not a quorum: one is enough."""

    __tablename__ = "transfer_approvals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transfers.id"), nullable=False, index=True
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    approved_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    comment: Mapped[str | None] = mapped_column(Text)

    transfer: Mapped["Transfer"] = relationship("Transfer", back_populates="approvals")


class TransferDocument(Base):
    """A supporting document filed with a transfer (sale agreement, NOC, receipts)."""

    __tablename__ = "transfer_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transfers.id"), nullable=False, index=True
    )
    doc_type: Mapped[TransferDocumentType] = mapped_column(
        _enum(TransferDocumentType), default=TransferDocumentType.OTHER, nullable=False
    )
    content_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    storage_locator: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    transfer: Mapped["Transfer"] = relationship("Transfer", back_populates="documents")

    def __repr__(self) -> str:
        return f"<TransferDocument {self.doc_type.value} {self.content_hash[:12]}>"


@event.listens_for(Transfer, "before_insert")
@event.listens_for(Transfer, "before_update")
def _recompute_transfer_fees(mapper, connection, target: Transfer) -> None:
    target.recompute_fees()
