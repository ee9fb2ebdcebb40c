"""
Store selection and PostgreSQL connection settings.

Environment Variables:
    AUDITTRAIL_STORE_DRIVER: "memory" or "psycopg2". When unset, psycopg2 is
        chosen if a database is configured, memory otherwise.

    DATABASE_URL: libpq URI, e.g. postgresql://audit:pw@db:5432/audittrail?sslmode=require
    DATABASE_HOST, DATABASE_PORT, DATABASE_NAME, DATABASE_USER,
    DATABASE_PASSWORD, DATABASE_SSL_MODE, DATABASE_CONNECT_TIMEOUT:
        Individual settings, used when DATABASE_URL is absent.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from psycopg2.extensions import make_dsn, parse_dsn


class AuditStoreDriver(str, Enum):
    MEMORY = "memory"
    PSYCOPG2 = "psycopg2"


@dataclass
class DatabaseConfig:
    """Where the audit_entries table lives."""
    host: str = "localhost"
    port: int = 5432
    database: str = "audittrail"
    user: str = "postgres"
    password: str = ""
    ssl_mode: str = "prefer"
    connect_timeout: int = 10

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        defaults = cls()
        env = os.environ.get
        return cls(
            host=env("DATABASE_HOST", defaults.host),
            port=int(env("DATABASE_PORT", defaults.port)),
            database=env("DATABASE_NAME", defaults.database),
            user=env("DATABASE_USER", defaults.user),
            password=env("DATABASE_PASSWORD", defaults.password),
            ssl_mode=env("DATABASE_SSL_MODE", defaults.ssl_mode),
            connect_timeout=int(env("DATABASE_CONNECT_TIMEOUT", defaults.connect_timeout)),
        )

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConfig":
        """Parse a libpq URI; parameters it omits keep their defaults."""
        params = parse_dsn(url)
        defaults = cls()
        return cls(
            host=params.get("host", defaults.host),
            port=int(params.get("port", defaults.port)),
            database=params.get("dbname", defaults.database),
            user=params.get("user", defaults.user),
            password=params.get("password", defaults.password),
            ssl_mode=params.get("sslmode", defaults.ssl_mode),
            connect_timeout=int(params.get("connect_timeout", defaults.connect_timeout)),
        )

    def to_url(self, include_password: bool = True) -> str:
        """URI form. Pass include_password=False for anything that gets logged."""
        credentials = quote(self.user, safe="")
        if include_password and self.password:
            credentials += ":" + quote(self.password, safe="")
        return (
            f"postgresql://{credentials}@{self.host}:{self.port}/{quote(self.database, safe='')}"
            f"?sslmode={self.ssl_mode}"
        )

    def to_dsn(self) -> str:
        """Keyword/value connection string for psycopg2.connect."""
        return make_dsn(
            host=self.host,
            port=self.port,
            dbname=self.database,
            user=self.user,
            password=self.password or None,
            sslmode=self.ssl_mode,
            connect_timeout=self.connect_timeout,
        )


def get_database_url() -> Optional[str]:
    """DATABASE_URL, else a URI built from DATABASE_HOST and friends, else None."""
    if os.environ.get("DATABASE_URL"):
        return os.environ["DATABASE_URL"]
    if os.environ.get("DATABASE_HOST"):
        return DatabaseConfig.from_env().to_url()
    return None


def get_store_driver() -> AuditStoreDriver:
    """
    Resolve which AuditStore to build.

    Raises:
        ValueError: AUDITTRAIL_STORE_DRIVER names an unknown driver
    """
    requested = os.environ.get("AUDITTRAIL_STORE_DRIVER", "").strip().lower()
    if not requested:
        if get_database_url() is None:
            return AuditStoreDriver.MEMORY
        return AuditStoreDriver.PSYCOPG2

    try:
        return AuditStoreDriver(requested)
    except ValueError:
        valid = ", ".join(driver.value for driver in AuditStoreDriver)
        raise ValueError(
            f"Unknown AUDITTRAIL_STORE_DRIVER: {requested}. Valid values: {valid}"
        ) from None
