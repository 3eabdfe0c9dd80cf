"""
Create a kitchen display link for a restaurant.

Usage:
    python -m islapos.seeds.kds_tokens <restaurant_id> [name]
"""

import argparse
import secrets
import string
import sys

from sqlmodel import Session

from ..db import create_db_and_tables, get_engine
from ..models import KdsToken, Restaurant

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_LENGTH = 12


def generate_kds_token() -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def create_kds_token(session: Session, restaurant_id: str, name: str | None = None) -> KdsToken:
    """Create an active KDS token. Raises ValueError for unknown restaurants."""
    if session.get(Restaurant, restaurant_id) is None:
        raise ValueError(f"Restaurant {restaurant_id} not found")

    row = KdsToken(restaurant_id=restaurant_id, token=generate_kds_token())
    if name:
        row.name = name
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a KDS link for a restaurant")
    parser.add_argument("restaurant_id", help="Restaurant id the display belongs to")
    parser.add_argument("name", nargs="?", default=None, help="Display name, e.g. 'Grill station'")
    args = parser.parse_args()

    create_db_and_tables()
    try:
        with Session(get_engine()) as session:
            token = create_kds_token(session, args.restaurant_id, args.name)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"✅ Created KDS token '{token.name}': /kds/{token.token}")
