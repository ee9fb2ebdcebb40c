"""
Storage Layer for the Audit Trail

Provides:
- AuditStore abstraction (InMemory for dev/tests, Postgres for prod)
- PostgreSQL schema
- Connection configuration
"""

from .store import (
    AuditStore,
    InMemoryAuditStore,
    PostgresAuditStore,
)
from .config import (
    AuditStoreDriver,
    DatabaseConfig,
    get_database_url,
    get_store_driver,
)

__all__ = [
    "AuditStore",
    "InMemoryAuditStore",
    "PostgresAuditStore",
    "AuditStoreDriver",
    "DatabaseConfig",
    "get_database_url",
    "get_store_driver",
]
