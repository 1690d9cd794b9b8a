"""Role policy and bearer tokens."""

import uuid
from datetime import timedelta

import jwt
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from landregistry.authority import (
    JWT_ALGORITHM,
    JWT_SECRET,
    Action,
    Caller,
    authorize,
    can,
    current_caller,
    decode_token,
    issue_token,
)
from landregistry.errors import NotAuthenticated, PermissionDenied
from landregistry.schemas import Role


def caller(role: Role) -> Caller:
    return Caller(id=uuid.uuid4(), role=role)


@pytest.mark.parametrize(
    "action, allowed",
    [
        (Action.CREATE_PARCEL, {Role.OFFICIAL, Role.ADMIN}),
        (Action.VERIFY_PARCEL, {Role.OFFICIAL, Role.ADMIN}),
        (Action.APPROVE_TRANSFER, {Role.OFFICIAL, Role.ADMIN}),
        (Action.REJECT_TRANSFER, {Role.OFFICIAL, Role.ADMIN}),
        (Action.DELETE_PARCEL, {Role.ADMIN}),
    ],
)
def test_role_only_actions(action, allowed):
    for role in Role:
        assert can(caller(role), action) == (role in allowed)


def test_initiate_requires_ownership_even_for_officials(parcel, callers):
    authorize(callers["alice"], Action.INITIATE_TRANSFER, parcel)
    for who in ("bob", "official", "admin"):
        with pytest.raises(PermissionDenied):
            authorize(callers[who], Action.INITIATE_TRANSFER, parcel)


def test_unknown_action_is_denied(callers):
    with pytest.raises(PermissionDenied):
        authorize(callers["admin"], "launch_rockets")


def test_token_round_trip():
    user_id = uuid.uuid4()
    assert decode_token(issue_token(user_id)) == user_id


def test_expired_token():
    token = issue_token(uuid.uuid4(), expires_in=timedelta(seconds=-1))
    with pytest.raises(NotAuthenticated, match="expired"):
        decode_token(token)


def test_tampered_and_malformed_tokens():
    forged = jwt.encode({"sub": str(uuid.uuid4())}, "a-different-secret-of-sufficient-length-for-hs256", algorithm=JWT_ALGORITHM)
    with pytest.raises(NotAuthenticated):
        decode_token(forged)

    no_subject = jwt.encode({"sub": "not-a-uuid"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    with pytest.raises(NotAuthenticated):
        decode_token(no_subject)


def test_current_caller_reads_role_from_database(session, users):
    creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials=issue_token(users["official"].id))
    resolved = current_caller(creds, session)
    assert resolved == Caller(id=users["official"].id, role=Role.OFFICIAL, name="Official")

    users["official"].role = Role.CITIZEN
    session.commit()
    assert current_caller(creds, session).role == Role.CITIZEN


def test_current_caller_rejects_missing_unknown_or_inactive(session, make_user):
    with pytest.raises(NotAuthenticated):
        current_caller(None, session)

    unknown = HTTPAuthorizationCredentials(scheme="Bearer", credentials=issue_token(uuid.uuid4()))
    with pytest.raises(NotAuthenticated):
        current_caller(unknown, session)

    dormant = make_user("Dormant", active=False)
    inactive = HTTPAuthorizationCredentials(scheme="Bearer", credentials=issue_token(dormant.id))
    with pytest.raises(NotAuthenticated):
        current_caller(inactive, session)
