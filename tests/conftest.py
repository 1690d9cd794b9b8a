"""Shared fixtures: an in-memory SQLite registry with a cast of users."""

import os

# database.py builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REGISTRY_BACKEND"] = "sql"
os.environ["NOTIFY_WEBHOOK_URL"] = ""
os.environ.pop("LOGFIRE_TOKEN", None)

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from landregistry import models  # noqa: F401
from landregistry.authority import Caller
from landregistry.database import Base
from landregistry.events import EventPublisher
from landregistry.models import User
from landregistry.registry import ParcelRegistry
from landregistry.schemas import Role, VerificationStatus
from landregistry.stores import SqlStore
from landregistry.workflow import TransferWorkflow


def parcel_attrs(owner_id, parcel_number="SRV-1001", **overrides) -> dict:
    attrs = {
        "parcel_number": parcel_number,
        "plot_number": "12A",
        "owner_id": owner_id,
        "area": Decimal("1200"),
        "location": {
            "address": "14 Lake View Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "postal_code": "560001",
            "latitude": Decimal("12.971599"),
            "longitude": Decimal("77.594566"),
        },
        "land_type": "residential",
        "market_value": Decimal("5000000"),
        "registration_date": datetime(2020, 1, 15),
    }
    attrs.update(overrides)
    return attrs


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(session):
    def _make_user(name: str, role: Role = Role.CITIZEN, wallet: str | None = None, active: bool = True) -> User:
        user = User(
            name=name,
            email=f"{name.lower()}@example.com",
            role=role,
            wallet_address=wallet,
            is_active=active,
        )
        session.add(user)
        session.commit()
        return user

    return _make_user


@pytest.fixture
def users(make_user):
    return {
        "admin": make_user("Admin", Role.ADMIN),
        "official": make_user("Official", Role.OFFICIAL),
        "alice": make_user("Alice", Role.OWNER),
        "bob": make_user("Bob", Role.CITIZEN),
        "carol": make_user("Carol", Role.CITIZEN),
    }


@pytest.fixture
def callers(users):
    return {key: Caller.from_user(user) for key, user in users.items()}


@pytest.fixture
def publisher():
    return EventPublisher()


@pytest.fixture
def store(session):
    return SqlStore(session)


@pytest.fixture
def registry(store, publisher):
    return ParcelRegistry(store, publisher)


@pytest.fixture
def workflow(store, publisher):
    return TransferWorkflow(store, publisher)


@pytest.fixture
def parcel(registry, users, callers):
    """P1: active, verified, owned by Alice."""
    p = registry.create_parcel(parcel_attrs(users["alice"].id), callers["official"])
    registry.verify_parcel(p.id, VerificationStatus.VERIFIED, callers["official"])
    return p
