"""Database URL helpers.

Tortoise ORM talks to PostgreSQL through the ``asyncpg://`` scheme, while
deployments usually hand us ``postgresql://`` or driver-qualified
``postgresql+psycopg2://`` URLs. Other schemes (``sqlite://`` for local runs
and tests) pass through untouched.
"""

from __future__ import annotations


def to_postgres_dsn(url: str) -> str:
    """Plain ``postgresql://`` DSN with any driver suffix or ``asyncpg://`` scheme removed."""

    if url.startswith("postgresql+"):
        return "postgresql://" + url.split("://", 1)[1]
    if url.startswith("asyncpg://"):
        return "postgresql://" + url[len("asyncpg://") :]
    return url


def to_asyncpg_dsn(url: str) -> str:
    """Tortoise-ready URL: PostgreSQL variants become ``asyncpg://``."""

    url = to_postgres_dsn(url)
    if url.startswith("postgresql://"):
        return "asyncpg://" + url[len("postgresql://") :]
    if url.startswith("postgres://"):
        return "asyncpg://" + url[len("postgres://") :]
    return url
