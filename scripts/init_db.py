import argparse
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.identity.db import build_engine
from app.identity.models import Base, Business
from scripts._db_utils import script_session


def create_schema(*, database_url: str) -> None:
    """
    create_all for local/dev databases. Deployed databases go through Alembic
    (scripts/release.py) instead.
    """
    engine = build_engine(database_url)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()


def seed_only(*, database_url: str | None = None, business_name: str | None = None) -> int | None:
    """
    Ensure a business exists (idempotent, matched by name). Returns its id.
    """
    name = (business_name or os.environ.get("SEED_BUSINESS_NAME") or "").strip()
    if not name:
        return None

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///identity.db").strip()
    with script_session(db_url) as s:
        b = s.query(Business).filter(Business.name == name).one_or_none()
        if not b:
            b = Business(name=name)
            s.add(b)
            s.flush()
            print(f"Created business {name!r} (id={b.id}).")
        else:
            print(f"Business {name!r} already exists (id={b.id}).")
        return b.id


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Create tables and optionally seed a business")
    parser.add_argument("--business", help="Business name to ensure exists")
    parser.add_argument("--skip-schema", action="store_true", help="Only seed; schema is managed by Alembic")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///identity.db").strip()
    if not args.skip_schema:
        create_schema(database_url=db_url)
        print("Initialized database schema.")
    seed_only(database_url=db_url, business_name=args.business)


if __name__ == "__main__":
    main()
