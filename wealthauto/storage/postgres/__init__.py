"""SQL-backed storage.

Notes
- We avoid logging connection URLs to prevent accidental secret leakage.
- The schema is portable: PostgreSQL in production, SQLite in tests.
"""

from .config import PostgresConfig
from .stores import PostgresStores

__all__ = ["PostgresConfig", "PostgresStores"]
