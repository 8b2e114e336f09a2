#!/usr/bin/env python3
"""Initialize the automation database schema.

Creates every table in wealthauto.db.models against DATABASE_URL. Existing
tables are left untouched.

Usage:
  python -m wealthauto.db.init_db

Requirements:
  - DATABASE_URL must be set
  - psycopg2-binary installed for PostgreSQL (pip install wealth-automation[postgres])
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine

from wealthauto.db.models import Base

logger = logging.getLogger(__name__)


def create_schema(database_url: str) -> list[str]:
    """Create missing tables. Returns the table names in the model metadata."""
    engine = create_engine(database_url, echo=False)
    try:
        Base.metadata.create_all(engine)
    finally:
        engine.dispose()
    return sorted(Base.metadata.tables)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set")

    tables = create_schema(database_url)
    logger.info(f"Database schema applied ({len(tables)} tables)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
