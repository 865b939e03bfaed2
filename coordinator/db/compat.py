"""
Dialect-aware statement helpers.

Every atomic upsert in the coordinator is written against the dialect's own
`insert()` construct so that `ON CONFLICT ... RETURNING` compiles natively on
PostgreSQL (production) and SQLite (tests).
"""
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.domain.errors import ConfigurationError


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def upsert_insert(session: AsyncSession, table):
    name = dialect_name(session)
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise ConfigurationError(f"Upserts are not supported on dialect {name!r}")
