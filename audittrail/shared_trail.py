"""
Shared Audit Trail Instance

One AuditTrail per process, built on first use.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- AUDITTRAIL_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

Unlike a cache, an audit store never silently falls back to memory:
if PostgreSQL is configured and unreachable, startup fails.
"""

from threading import Lock
from typing import Optional

import psycopg2

from .config import TrailConfig
from .core import AuditTrail
from .db.config import AuditStoreDriver, DatabaseConfig, get_database_url, get_store_driver
from .db.store import AuditStore, InMemoryAuditStore, PostgresAuditStore
from .observability import get_logger

logger = get_logger(__name__)

_trail: Optional[AuditTrail] = None
_trail_lock = Lock()


def database_config() -> DatabaseConfig:
    """The connection settings create_store() uses: DATABASE_URL first, then DATABASE_*."""
    db_url = get_database_url()
    if db_url and "://" in db_url:
        return DatabaseConfig.from_url(db_url)
    return DatabaseConfig.from_env()


def create_store() -> AuditStore:
    """
    Create the AuditStore selected by configuration.

    Returns:
        InMemoryAuditStore for development/testing
        PostgresAuditStore for production (when a database is configured)
    """
    driver = get_store_driver()

    if driver == AuditStoreDriver.MEMORY:
        logger.warning("Using in-memory audit store (no persistence)")
        return InMemoryAuditStore()

    config = database_config()

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    store = PostgresAuditStore(connection_factory)
    # Fail fast on a bad DSN
    store.count()
    logger.info(
        "PostgreSQL audit store connected",
        database=config.to_url(include_password=False),
    )
    return store


def get_trail() -> AuditTrail:
    """Get the process-wide AuditTrail, recovering it on first call."""
    global _trail
    if _trail is not None:
        return _trail

    with _trail_lock:
        if _trail is None:
            config = TrailConfig.from_env()
            _trail = AuditTrail.from_config(config, create_store())
            logger.info(
                "Audit trail ready",
                next_sequence_index=_trail.head.next_sequence_index,
                store_type=type(_trail.store).__name__,
            )
    return _trail


def set_trail(trail: Optional[AuditTrail]) -> None:
    """Replace the shared instance (tests, embedding applications)."""
    global _trail
    with _trail_lock:
        _trail = trail


def open_store() -> AuditStore:
    """
    The shared trail's store if the trail exists, else a new store from
    configuration.

    No head is bootstrapped, so read-only tools can open a chain that
    recovery would refuse.
    """
    trail = _trail
    if trail is not None:
        return trail.store
    return create_store()
