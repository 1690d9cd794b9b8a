"""Create a registry user and print a bearer token for it.

Usage:
    uv run python scripts/create_user.py --name "Asha Rao" --email asha@example.com --role official
    uv run python scripts/create_user.py --email owner@example.com --name Owner --wallet 0xAbC...
    uv run python scripts/create_user.py --token-for asha@example.com       # Re-issue a token
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from landregistry.authority import issue_token
from landregistry.database import Base, engine
from landregistry.models import User
from landregistry.schemas import Role


def create_user(session: Session, name: str, email: str, role: Role, wallet: str | None) -> User:
    user = User(name=name, email=email.lower(), role=role, wallet_address=wallet)
    session.add(user)
    session.commit()
    return user


def main():
    parser = argparse.ArgumentParser(description="Create a land registry user")
    parser.add_argument("--name", help="Display name")
    parser.add_argument("--email", help="Email address (unique)")
    parser.add_argument("--role", choices=[r.value for r in Role], default=Role.CITIZEN.value)
    parser.add_argument("--wallet", help="0x-prefixed wallet address for ledger deployments")
    parser.add_argument("--token-for", metavar="EMAIL", help="Issue a token for an existing user")
    parser.add_argument("--token-hours", type=int, default=24, help="Token lifetime in hours")
    args = parser.parse_args()

    if not (args.token_for or (args.name and args.email)):
        parser.print_help()
        return

    Base.metadata.create_all(engine)
    expires_in = timedelta(hours=args.token_hours)

    with Session(engine) as session:
        if args.token_for:
            user = session.execute(
                select(User).where(User.email == args.token_for.lower())
            ).scalar_one_or_none()
            if user is None:
                print(f"No user with email {args.token_for}")
                sys.exit(1)
        else:
            try:
                user = create_user(session, args.name, args.email, Role(args.role), args.wallet)
            except IntegrityError:
                print(f"A user with email {args.email} or that wallet already exists")
                sys.exit(1)
            print(f"Created {user.role.value} {user.name} ({user.email})")

        print(f"User id: {user.id}")
        print(f"Token:   {issue_token(user.id, expires_in=expires_in)}")


if __name__ == "__main__":
    main()
