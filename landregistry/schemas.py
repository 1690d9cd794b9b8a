"""Pydantic validation schemas for the land registry.

Schema Engineering Philosophy:
- Enums are the canonical value sets shared by the ORM models and the API
- Field constraints carry the registration rules (area, coordinates, postal code)
- Read models are built from ORM rows with `from_model` so the wire shape
  never leaks SQLAlchemy internals

The transfer workflow rules (ownership, single pending transfer, sale price)
live in workflow.py because they depend on stored state, not just input.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class Role(str, Enum):
    """Role of an authenticated identity."""

    CITIZEN = "citizen"
    OWNER = "owner"
    OFFICIAL = "official"
    """Registry official. Verifies parcels and approves or rejects transfers."""

    ADMIN = "admin"
    """Everything an official can do, plus deleting parcels."""


class LandType(str, Enum):
    """Parcel classification."""

    AGRICULTURAL = "agricultural"
    RESIDENTIAL = "residential"
    COMMERCIAL = "commercial"
    INDUSTRIAL = "industrial"


class VerificationStatus(str, Enum):
    """Whether an official has confirmed the registration is authentic."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ParcelStatus(str, Enum):
    """Lifecycle status of a parcel.

    UNDER_TRANSFER is set and cleared only by the transfer workflow.
    """

    ACTIVE = "active"
    UNDER_TRANSFER = "under_transfer"
    DISPUTED = "disputed"
    INACTIVE = "inactive"
    """Soft-deleted. Parcels referenced by transfers are never hard-deleted."""


class TransferType(str, Enum):
    """Legal basis of an ownership change."""

    SALE = "sale"
    """Requires a sale price greater than zero."""

    GIFT = "gift"
    INHERITANCE = "inheritance"
    COURT_ORDER = "court_order"


class TransferStatus(str, Enum):
    """Transfer state machine.

    initiated -> pending_approval -> approved -> completed
                                  -> rejected
    initiated | pending_approval  -> cancelled

    New transfers are created directly in PENDING_APPROVAL. INITIATED is kept
    so records written by other tools (or a future submission step) remain
    valid; it is treated as open and cancellable.
    """

    INITIATED = "initiated"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that count as "the" pending transfer of a parcel
OPEN_TRANSFER_STATUSES = (TransferStatus.INITIATED, TransferStatus.PENDING_APPROVAL)


class ParcelDocumentType(str, Enum):
    """Kinds of documents attached to a parcel record."""

    SALE_DEED = "sale_deed"
    TITLE_DEED = "title_deed"
    SURVEY_DOCUMENT = "survey_document"
    TAX_RECEIPT = "tax_receipt"
    OTHER = "other"


class TransferDocumentType(str, Enum):
    """Supporting papers filed with a transfer while it is open."""

    SALE_AGREEMENT = "sale_agreement"
    NOC = "noc"
    """No-objection certificate."""

    STAMP_DUTY = "stamp_duty"
    REGISTRATION_FEE = "registration_fee"
    OTHER = "other"


# =============================================================================
# PARCEL INPUT
# =============================================================================


class Location(BaseModel):
    """Postal address and coordinates of a parcel."""

    model_config = ConfigDict(str_strip_whitespace=True)

    address: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=50)
    state: str = Field(min_length=1, max_length=50)
    postal_code: str = Field(
        pattern=r"^\d{6}$",
        description="6-digit postal (PIN) code.",
    )
    latitude: Decimal = Field(ge=-90, le=90)
    longitude: Decimal = Field(ge=-180, le=180)


class LocationUpdate(BaseModel):
    """Partial location change. Omitted fields keep their stored value."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    address: str | None = Field(default=None, min_length=1, max_length=200)
    city: str | None = Field(default=None, min_length=1, max_length=50)
    state: str | None = Field(default=None, min_length=1, max_length=50)
    postal_code: str | None = Field(default=None, pattern=r"^\d{6}$")
    latitude: Decimal | None = Field(default=None, ge=-90, le=90)
    longitude: Decimal | None = Field(default=None, ge=-180, le=180)


class ParcelCreate(BaseModel):
    """Registration of a new parcel by an official."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    parcel_number: str = Field(
        min_length=1,
        max_length=50,
        description="Survey number. Unique and immutable once registered.",
    )
    plot_number: str = Field(min_length=1, max_length=50)
    owner_id: UUID
    area: Decimal = Field(gt=0, max_digits=12, decimal_places=2, description="Area in square metres.")
    location: Location
    land_type: LandType
    market_value: Decimal = Field(ge=0, max_digits=14, decimal_places=2)
    registration_date: datetime


class ParcelUpdate(BaseModel):
    """Editable parcel attributes.

    parcel_number, owner and status are deliberately absent: the number is
    immutable and owner/status only change through the transfer workflow.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    plot_number: str | None = Field(default=None, min_length=1, max_length=50)
    area: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    location: LocationUpdate | None = None
    land_type: LandType | None = None
    market_value: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)


class VerificationDecision(BaseModel):
    verification_status: VerificationStatus

    @field_validator("verification_status")
    @classmethod
    def must_be_decision(cls, v: VerificationStatus) -> VerificationStatus:
        if v == VerificationStatus.PENDING:
            raise ValueError("verification decision must be 'verified' or 'rejected'")
        return v


class DocumentCreate(BaseModel):
    """Reference to a document stored elsewhere (hash and locator are opaque)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    doc_type: ParcelDocumentType = ParcelDocumentType.OTHER
    content_hash: str = Field(min_length=1, max_length=128)
    storage_locator: str = Field(min_length=1, max_length=500)


class ParcelSearch(BaseModel):
    """Public search filters. Results are always verified, active parcels."""

    model_config = ConfigDict(str_strip_whitespace=True)

    q: str | None = Field(
        default=None,
        description="Case-insensitive substring of parcel number, plot number or address.",
    )
    city: str | None = None
    state: str | None = None
    land_type: LandType | None = None
    min_area: Decimal | None = Field(default=None, ge=0)
    max_area: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_area_range(self) -> "ParcelSearch":
        if self.min_area is not None and self.max_area is not None:
            if self.min_area > self.max_area:
                raise ValueError("min_area cannot exceed max_area")
        return self


# =============================================================================
# TRANSFER INPUT
# =============================================================================


class FeeInput(BaseModel):
    """Fee components. Any caller-supplied total is ignored and recomputed."""

    model_config = ConfigDict(extra="ignore")

    stamp_duty: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    registration_fee: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    other_charges: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)


class TransferCreate(BaseModel):
    parcel_id: UUID
    to_owner_id: UUID
    transfer_type: TransferType
    sale_price: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    transfer_date: datetime
    fees: FeeInput = Field(default_factory=FeeInput)


class TransferDocumentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    doc_type: TransferDocumentType = TransferDocumentType.OTHER
    content_hash: str = Field(min_length=1, max_length=128)
    storage_locator: str = Field(min_length=1, max_length=500)


class ApprovalRequest(BaseModel):
    comment: str | None = Field(default=None, max_length=500)


class RejectionRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(min_length=1, max_length=500)


# =============================================================================
# READ MODELS
# =============================================================================


class UserSummary(BaseModel):
    id: UUID
    name: str
    email: str
    role: Role

    @classmethod
    def from_model(cls, user) -> "UserSummary | None":
        if user is None:
            return None
        return cls(id=user.id, name=user.name, email=user.email, role=user.role)


class DocumentRead(BaseModel):
    id: UUID
    doc_type: ParcelDocumentType
    content_hash: str
    storage_locator: str
    uploaded_by_id: UUID
    uploaded_at: datetime

    @classmethod
    def from_model(cls, doc) -> "DocumentRead":
        return cls(
            id=doc.id,
            doc_type=doc.doc_type,
            content_hash=doc.content_hash,
            storage_locator=doc.storage_locator,
            uploaded_by_id=doc.uploaded_by_id,
            uploaded_at=doc.uploaded_at,
        )


class TransferDocumentRead(DocumentRead):
    doc_type: TransferDocumentType


class ParcelRead(BaseModel):
    id: UUID
    parcel_number: str
    plot_number: str
    owner: UserSummary | None
    area: Decimal
    location: Location
    land_type: LandType
    market_value: Decimal
    registration_date: datetime
    verification_status: VerificationStatus
    verified_by_id: UUID | None
    verified_at: datetime | None
    status: ParcelStatus
    blockchain_tx_hash: str | None
    documents: list[DocumentRead] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, parcel, include_documents: bool = True) -> "ParcelRead":
        documents = []
        if include_documents:
            documents = [DocumentRead.from_model(d) for d in parcel.documents]
        return cls(
            id=parcel.id,
            parcel_number=parcel.parcel_number,
            plot_number=parcel.plot_number,
            owner=UserSummary.from_model(parcel.owner),
            area=parcel.area,
            location=Location(
                address=parcel.address,
                city=parcel.city,
                state=parcel.state,
                postal_code=parcel.postal_code,
                latitude=parcel.lat,
                longitude=parcel.lng,
            ),
            land_type=parcel.land_type,
            market_value=parcel.market_value,
            registration_date=parcel.registration_date,
            verification_status=parcel.verification_status,
            verified_by_id=parcel.verified_by_id,
            verified_at=parcel.verified_at,
            status=parcel.status,
            blockchain_tx_hash=parcel.blockchain_tx_hash,
            documents=documents,
            created_at=parcel.created_at,
            updated_at=parcel.updated_at,
        )


class FeeBreakdown(BaseModel):
    stamp_duty: Decimal
    registration_fee: Decimal
    other_charges: Decimal
    total: Decimal


class ApprovalRead(BaseModel):
    approver_id: UUID
    approved_at: datetime
    comment: str | None


class TransferRead(BaseModel):
    id: UUID
    parcel_id: UUID
    parcel_number: str | None
    from_owner: UserSummary | None
    to_owner: UserSummary | None
    initiated_by_id: UUID
    transfer_type: TransferType
    sale_price: Decimal | None
    transfer_date: datetime
    status: TransferStatus
    fees: FeeBreakdown
    rejection_reason: str | None
    approvals: list[ApprovalRead]
    documents: list[TransferDocumentRead] = []
    blockchain_tx_hash: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, transfer) -> "TransferRead":
        return cls(
            id=transfer.id,
            parcel_id=transfer.parcel_id,
            parcel_number=transfer.parcel.parcel_number if transfer.parcel else None,
            from_owner=UserSummary.from_model(transfer.from_owner),
            to_owner=UserSummary.from_model(transfer.to_owner),
            initiated_by_id=transfer.initiated_by_id,
            transfer_type=transfer.transfer_type,
            sale_price=transfer.sale_price,
            transfer_date=transfer.transfer_date,
            status=transfer.status,
            fees=FeeBreakdown(
                stamp_duty=transfer.stamp_duty,
                registration_fee=transfer.registration_fee,
                other_charges=transfer.other_charges,
                total=transfer.fees_total,
            ),
            rejection_reason=transfer.rejection_reason,
            approvals=[
                ApprovalRead(
                    approver_id=a.approver_id,
                    approved_at=a.approved_at,
                    comment=a.comment,
                )
                for a in transfer.approvals
            ],
            documents=[TransferDocumentRead.from_model(d) for d in transfer.documents],
            blockchain_tx_hash=transfer.blockchain_tx_hash,
            completed_at=transfer.completed_at,
            created_at=transfer.created_at,
            updated_at=transfer.updated_at,
        )


class OwnershipHistoryEntry(BaseModel):
    """One ownership interval. The current owner's interval is open-ended."""

    owner: UserSummary | None
    from_date: datetime
    to_date: datetime | None
    is_current: bool


class OwnershipHistory(BaseModel):
    parcel_id: UUID
    parcel_number: str
    plot_number: str
    history: list[OwnershipHistoryEntry]


# =============================================================================
# RESPONSE ENVELOPE
# =============================================================================


class ApiResponse(BaseModel):
    """Uniform envelope for every endpoint."""

    success: bool
    data: Any | None = None
    message: str | None = None
    error: str | None = None
    count: int | None = None
