"""Identity and role authority.

The registry consumes exactly three things from authentication: who the
caller is, what role they hold, and whether they own a given parcel. All
role and ownership rules are in one policy table (`authorize`) instead of
being repeated in every handler.

Bearer tokens are HS256 JWTs whose `sub` is a user id. The role is always
read from the users table so revoking a role takes effect immediately.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

import jwt
from dotenv import load_dotenv
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .errors import NotAuthenticated, PermissionDenied
from .models import Parcel, Transfer, User
from .schemas import Role

load_dotenv()

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-only-land-registry-secret-change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

security = HTTPBearer(auto_error=False)


class Action(str, Enum):
    CREATE_PARCEL = "create_parcel"
    UPDATE_PARCEL = "update_parcel"
    VERIFY_PARCEL = "verify_parcel"
    DELETE_PARCEL = "delete_parcel"
    ADD_DOCUMENT = "add_document"
    INITIATE_TRANSFER = "initiate_transfer"
    APPROVE_TRANSFER = "approve_transfer"
    REJECT_TRANSFER = "reject_transfer"
    CANCEL_TRANSFER = "cancel_transfer"
    ADD_TRANSFER_DOCUMENT = "add_transfer_document"
    VIEW_TRANSFER = "view_transfer"
    VIEW_ALL_TRANSFERS = "view_all_transfers"


OFFICIAL_ROLES = frozenset({Role.OFFICIAL, Role.ADMIN})

# Actions decided by role alone
ROLE_GRANTS: dict[Action, frozenset[Role]] = {
    Action.CREATE_PARCEL: OFFICIAL_ROLES,
    Action.UPDATE_PARCEL: OFFICIAL_ROLES,
    Action.VERIFY_PARCEL: OFFICIAL_ROLES,
    Action.DELETE_PARCEL: frozenset({Role.ADMIN}),
    Action.APPROVE_TRANSFER: OFFICIAL_ROLES,
    Action.REJECT_TRANSFER: OFFICIAL_ROLES,
    Action.VIEW_ALL_TRANSFERS: OFFICIAL_ROLES,
}


@dataclass(frozen=True)
class Caller:
    """The authenticated identity behind a request."""

    id: uuid.UUID
    role: Role
    name: str | None = None

    @property
    def is_official(self) -> bool:
        return self.role in OFFICIAL_ROLES

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        return cls(id=user.id, role=user.role, name=user.name)


def is_owner_of(parcel: Parcel, caller: Caller) -> bool:
    return parcel.owner_id == caller.id


def authorize(caller: Caller, action: Action, resource: Parcel | Transfer | None = None) -> None:
    """Raise PermissionDenied unless `caller` may perform `action` on `resource`.

    Role-only actions are looked up in ROLE_GRANTS. The rest depend on the
    caller's relationship to the resource:

    - INITIATE_TRANSFER: caller owns the parcel (any role)
    - CANCEL_TRANSFER: caller initiated the transfer (officials included)
    - ADD_DOCUMENT: parcel owner, or an official/admin
    - ADD_TRANSFER_DOCUMENT: transfer initiator, or an official/admin
    - VIEW_TRANSFER: a party to the transfer, or an official/admin
    """
    if action in ROLE_GRANTS:
        if caller.role not in ROLE_GRANTS[action]:
            raise PermissionDenied(
                f"User role {caller.role.value} is not authorized to {action.value.replace('_', ' ')}"
            )
        return

    if action == Action.INITIATE_TRANSFER:
        if resource is None or not is_owner_of(resource, caller):
            raise PermissionDenied("Not authorized to transfer this land")
    elif action == Action.CANCEL_TRANSFER:
        if resource is None or resource.initiated_by_id != caller.id:
            raise PermissionDenied("Not authorized to cancel this transfer")
    elif action == Action.ADD_DOCUMENT:
        if not caller.is_official and (resource is None or not is_owner_of(resource, caller)):
            raise PermissionDenied("Not authorized to upload documents for this land")
    elif action == Action.ADD_TRANSFER_DOCUMENT:
        if not caller.is_official and (resource is None or resource.initiated_by_id != caller.id):
            raise PermissionDenied("Not authorized to upload documents for this transfer")
    elif action == Action.VIEW_TRANSFER:
        parties = set() if resource is None else {resource.from_owner_id, resource.to_owner_id}
        if not caller.is_official and caller.id not in parties:
            raise PermissionDenied("Not authorized to view this transfer")
    else:
        raise PermissionDenied(f"Unknown action {action!r}")


def can(caller: Caller, action: Action, resource: Parcel | Transfer | None = None) -> bool:
    try:
        authorize(caller, action, resource)
    except PermissionDenied:
        return False
    return True


# =============================================================================
# Tokens
# =============================================================================


def issue_token(user_id: uuid.UUID, expires_in: timedelta | None = None) -> str:
    """Sign a bearer token for `user_id`."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=JWT_EXPIRATION_HOURS)),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> uuid.UUID:
    """Return the user id carried by a valid token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise NotAuthenticated("Invalid authentication token")

    try:
        return uuid.UUID(payload.get("sub", ""))
    except (TypeError, ValueError):
        raise NotAuthenticated("Invalid token payload")


def current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> Caller:
    """FastAPI dependency resolving the bearer token to a Caller."""
    if not credentials:
        raise NotAuthenticated("Not authorized to access this route")

    user_id = decode_token(credentials.credentials)
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotAuthenticated("No user found with this token")

    logger.debug(f"Authenticated user: {user.id} ({user.role.value})")
    return Caller.from_user(user)
