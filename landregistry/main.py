"""FastAPI application for the land registry."""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from functools import lru_cache
from uuid import UUID

import logfire
from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .authority import Caller, current_caller
from .database import get_db, init_db
from .errors import RegistryError
from .events import EventPublisher, WebhookNotifier, notifier_from_env
from .history import build_history
from .ledger import LedgerClient, LedgerStore
from .registry import ParcelRegistry
from .schemas import (
    ApiResponse,
    ApprovalRequest,
    DocumentCreate,
    DocumentRead,
    LandType,
    ParcelCreate,
    ParcelRead,
    ParcelUpdate,
    RejectionRequest,
    TransferCreate,
    TransferDocumentCreate,
    TransferDocumentRead,
    TransferRead,
    VerificationDecision,
)
from .stores import RegistryStore, SqlStore
from .workflow import TransferWorkflow

load_dotenv()

logger = logging.getLogger(__name__)

REGISTRY_BACKEND = os.getenv("REGISTRY_BACKEND", "sql")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if o.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    logger.info(f"Land registry started with {REGISTRY_BACKEND} backend")
    yield


app = FastAPI(
    title="Land Registry API",
    description="Parcel registration and ownership transfer workflow",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error envelope
# =============================================================================


def _envelope(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse(success=False, error=error).model_dump(exclude_none=True),
    )


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return _envelope(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body") or "request"
    message = f"{field}: {first.get('msg', 'invalid value')}"
    logger.warning(f"{request.method} {request.url.path} -> 400 {message}")
    return _envelope(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _envelope(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return _envelope(500, "Server error")


# =============================================================================
# Dependencies
# =============================================================================


@lru_cache
def get_ledger_client() -> LedgerClient:
    return LedgerClient.from_env()


@lru_cache
def get_notifier() -> WebhookNotifier | None:
    return notifier_from_env()


def get_store(db: Session = Depends(get_db)) -> RegistryStore:
    if REGISTRY_BACKEND == "ledger":
        return LedgerStore(db, get_ledger_client())
    return SqlStore(db)


def get_publisher(background_tasks: BackgroundTasks) -> EventPublisher:
    """Per-request event buffer, delivered after the response is sent."""
    publisher = EventPublisher()
    background_tasks.add_task(_deliver_events, publisher)
    return publisher


def _deliver_events(publisher: EventPublisher) -> None:
    events = publisher.drain()
    notifier = get_notifier()
    if events and notifier is not None:
        notifier.deliver(events)


def get_registry(
    store: RegistryStore = Depends(get_store),
    events: EventPublisher = Depends(get_publisher),
) -> ParcelRegistry:
    return ParcelRegistry(store, events)


def get_workflow(
    store: RegistryStore = Depends(get_store),
    events: EventPublisher = Depends(get_publisher),
) -> TransferWorkflow:
    return TransferWorkflow(store, events)


def ok(data=None, message: str | None = None, count: int | None = None) -> dict:
    return ApiResponse(success=True, data=data, message=message, count=count).model_dump(
        mode="json", exclude_none=True
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Land Registry API", "backend": REGISTRY_BACKEND}


# =============================================================================
# Parcels
# =============================================================================


@app.post("/api/parcels", status_code=201)
def create_parcel(
    body: ParcelCreate,
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    parcel = registry.create_parcel(body, caller)
    return ok(ParcelRead.from_model(parcel), message="Land registered successfully")


@app.get("/api/parcels")
def search_parcels(
    q: str | None = None,
    city: str | None = None,
    state: str | None = None,
    land_type: LandType | None = None,
    min_area: Decimal | None = Query(default=None, ge=0),
    max_area: Decimal | None = Query(default=None, ge=0),
    registry: ParcelRegistry = Depends(get_registry),
):
    """Public search over verified, active parcels (newest first)."""
    filters = {
        "q": q, "city": city, "state": state, "land_type": land_type,
        "min_area": min_area, "max_area": max_area,
    }
    parcels = registry.search_parcels(filters)
    results = [ParcelRead.from_model(p, include_documents=False) for p in parcels]
    return ok(results, count=len(results))


@app.get("/api/parcels/all")
def list_parcels(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    """Every parcel regardless of status, paginated, newest first."""
    parcels, total = registry.list_parcels(page=page, limit=limit)
    return {
        **ok([ParcelRead.from_model(p, include_documents=False) for p in parcels], count=len(parcels)),
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


@app.get("/api/parcels/{parcel_id}")
def get_parcel(parcel_id: UUID, registry: ParcelRegistry = Depends(get_registry)):
    return ok(ParcelRead.from_model(registry.get_parcel(parcel_id)))


@app.put("/api/parcels/{parcel_id}")
def update_parcel(
    parcel_id: UUID,
    body: ParcelUpdate,
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    parcel = registry.update_parcel(parcel_id, body, caller)
    return ok(ParcelRead.from_model(parcel), message="Land updated successfully")


@app.put("/api/parcels/{parcel_id}/verify")
def verify_parcel(
    parcel_id: UUID,
    body: VerificationDecision,
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    parcel = registry.verify_parcel(parcel_id, body.verification_status, caller)
    return ok(ParcelRead.from_model(parcel), message=f"Land {body.verification_status.value} successfully")


@app.delete("/api/parcels/{parcel_id}")
def delete_parcel(
    parcel_id: UUID,
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    hard_deleted = registry.delete_parcel(parcel_id, caller)
    message = "Land deleted successfully" if hard_deleted else "Land deactivated successfully"
    return ok({"id": str(parcel_id), "deleted": hard_deleted}, message=message)


@app.post("/api/parcels/{parcel_id}/documents", status_code=201)
def add_document(
    parcel_id: UUID,
    body: DocumentCreate,
    caller: Caller = Depends(current_caller),
    registry: ParcelRegistry = Depends(get_registry),
):
    doc = registry.add_document(parcel_id, body, caller)
    return ok(DocumentRead.from_model(doc), message="Document uploaded successfully")


@app.get("/api/parcels/{parcel_id}/history")
def get_ownership_history(parcel_id: UUID, store: RegistryStore = Depends(get_store)):
    return ok(build_history(store, parcel_id))


@app.get("/api/parcels/{parcel_id}/transfers")
def get_transfer_history(parcel_id: UUID, workflow: TransferWorkflow = Depends(get_workflow)):
    transfers = [TransferRead.from_model(t) for t in workflow.get_transfer_history(parcel_id)]
    return ok(transfers, count=len(transfers))


@app.get("/api/parcels/{parcel_id}/pending-transfer")
def get_pending_transfer(parcel_id: UUID, workflow: TransferWorkflow = Depends(get_workflow)):
    transfer = workflow.get_pending_transfer(parcel_id)
    return ok(TransferRead.from_model(transfer) if transfer else None)


# =============================================================================
# Transfers
# =============================================================================


@app.post("/api/transfers", status_code=201)
def initiate_transfer(
    body: TransferCreate,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    transfer = workflow.initiate_transfer(
        body.parcel_id,
        caller,
        to_owner_id=body.to_owner_id,
        transfer_type=body.transfer_type,
        sale_price=body.sale_price,
        transfer_date=body.transfer_date,
        fees=body.fees,
    )
    return ok(TransferRead.from_model(transfer), message="Transfer initiated successfully")


@app.get("/api/transfers")
def list_transfers(
    mine: bool = False,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    transfers = [TransferRead.from_model(t) for t in workflow.list_transfers(caller, mine=mine)]
    return ok(transfers, count=len(transfers))


@app.get("/api/transfers/{transfer_id}")
def get_transfer(
    transfer_id: UUID,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    return ok(TransferRead.from_model(workflow.get_transfer(transfer_id, caller)))


@app.put("/api/transfers/{transfer_id}/approve")
def approve_transfer(
    transfer_id: UUID,
    body: ApprovalRequest | None = None,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    comment = body.comment if body else None
    transfer = workflow.approve_transfer(transfer_id, caller, comment=comment)
    return ok(TransferRead.from_model(transfer), message="Transfer approved and completed successfully")


@app.put("/api/transfers/{transfer_id}/reject")
def reject_transfer(
    transfer_id: UUID,
    body: RejectionRequest,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    transfer = workflow.reject_transfer(transfer_id, caller, body.reason)
    return ok(TransferRead.from_model(transfer), message="Transfer rejected successfully")


@app.put("/api/transfers/{transfer_id}/cancel")
def cancel_transfer(
    transfer_id: UUID,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    transfer = workflow.cancel_transfer(transfer_id, caller)
    return ok(TransferRead.from_model(transfer), message="Transfer cancelled successfully")


@app.post("/api/transfers/{transfer_id}/documents", status_code=201)
def add_transfer_document(
    transfer_id: UUID,
    body: TransferDocumentCreate,
    caller: Caller = Depends(current_caller),
    workflow: TransferWorkflow = Depends(get_workflow),
):
    doc = workflow.add_transfer_document(transfer_id, body, caller)
    return ok(TransferDocumentRead.from_model(doc), message="Document uploaded successfully")
