"""Load parcels from a JSON file through the parcel registry.

Each record goes through the same validation as the API (`ParcelCreate`), so a
bad record is reported and skipped rather than written. Owners may be given by
`owner_id` or by `owner_email`.

Usage:
    uv run python scripts/seed_parcels.py --as admin@example.com data/parcels.json
    uv run python scripts/seed_parcels.py --as admin@example.com --verify data/parcels.json

File format (a JSON list):
    [{"parcel_number": "SRV-001", "plot_number": "12A", "owner_email": "owner@example.com",
      "area": 1200, "land_type": "residential", "market_value": 5000000,
      "registration_date": "2020-01-15T00:00:00",
      "location": {"address": "...", "city": "...", "state": "...",
                   "postal_code": "560001", "latitude": 12.97, "longitude": 77.59}}]
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.orm import Session

from landregistry.authority import Caller
from landregistry.database import Base, engine
from landregistry.errors import RegistryError, ValidationError
from landregistry.models import User
from landregistry.registry import ParcelRegistry
from landregistry.schemas import VerificationStatus
from landregistry.stores import SqlStore


def resolve_owner(session: Session, record: dict) -> dict:
    """Replace `owner_email` with the matching `owner_id`."""
    record = dict(record)
    email = record.pop("owner_email", None)
    if email and "owner_id" not in record:
        owner = session.execute(select(User).where(User.email == email.lower())).scalar_one_or_none()
        if owner is None:
            raise ValidationError(f"Owner {email} not found")
        record["owner_id"] = str(owner.id)
    return record


def seed(session: Session, caller: Caller, records: list[dict], verify: bool = False) -> tuple[int, list[str]]:
    registry = ParcelRegistry(SqlStore(session))
    created = 0
    errors = []

    for i, record in enumerate(records):
        label = record.get("parcel_number", f"record {i}")
        try:
            parcel = registry.create_parcel(resolve_owner(session, record), caller)
            if verify:
                registry.verify_parcel(parcel.id, VerificationStatus.VERIFIED, caller)
            created += 1
        except RegistryError as e:
            errors.append(f"{label}: {e.message}")

    return created, errors


def main():
    parser = argparse.ArgumentParser(description="Seed parcels from a JSON file")
    parser.add_argument("file", help="JSON file with a list of parcel records")
    parser.add_argument("--as", dest="as_email", required=True,
                        help="Email of the official/admin registering the parcels")
    parser.add_argument("--verify", action="store_true", help="Mark seeded parcels as verified")
    args = parser.parse_args()

    path = Path(args.file)
    if not path.exists():
        print(f"{args.file} not found")
        sys.exit(1)

    records = json.loads(path.read_text())
    if not isinstance(records, list):
        print("Expected a JSON list of parcel records")
        sys.exit(1)

    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = session.execute(
            select(User).where(User.email == args.as_email.lower())
        ).scalar_one_or_none()
        if user is None:
            print(f"No user with email {args.as_email}")
            sys.exit(1)

        print(f"Seeding {len(records)} parcels as {user.email} ({user.role.value})...")
        created, errors = seed(session, Caller.from_user(user), records, verify=args.verify)

    print(f"Created: {created}")
    if errors:
        print(f"Skipped ({len(errors)}):")
        for err in errors:
            print(f"  - {err}")


if __name__ == "__main__":
    main()
