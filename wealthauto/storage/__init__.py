"""Storage implementations.

Concrete implementations of the persistence interfaces: dict-backed stores for
tests and dry runs, and PostgreSQL via SQLAlchemy.
"""

from .memory import InMemoryStores
from .postgres import PostgresConfig, PostgresStores
