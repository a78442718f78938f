"""
Async engine and session factory for the authorization store.

The engine is created lazily from DATABASE_URL the first time a session is
requested. Postgres URLs are rewritten to the asyncpg driver.

Environment variables:
- DATABASE_URL: required
- DB_POOL_SIZE: persistent connections (default 5)
- DB_MAX_OVERFLOW: burst connections above the pool size (default 10)

Usage:
    from tenant_authz.database.session import get_db_session

    @router.get("/roles")
    async def list_roles(db: AsyncSession = Depends(get_db_session)):
        ...
"""

import logging
import os
from typing import AsyncGenerator, Optional

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 5
DEFAULT_MAX_OVERFLOW = 10

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[sessionmaker] = None


class DatabaseNotConfiguredError(ValueError):
    """DATABASE_URL is missing."""
    pass


def normalize_database_url(database_url: str) -> str:
    """
    Point Postgres URLs at the asyncpg driver.

    Accepts both the short postgres:// scheme and postgresql://. URLs that
    already name a driver are returned unchanged.
    """
    for scheme in ("postgres://", "postgresql://"):
        if database_url.startswith(scheme):
            return "postgresql+asyncpg://" + database_url[len(scheme):]
    return database_url


def database_url_from_env() -> str:
    raw = os.getenv("DATABASE_URL")
    if not raw:
        raise DatabaseNotConfiguredError("DATABASE_URL is not set")
    return normalize_database_url(raw)


def _pool_setting(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Invalid pool setting, using default", extra={"variable": name, "value": raw})
        return default


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = database_url_from_env()
        _engine = create_async_engine(
            url,
            pool_size=_pool_setting("DB_POOL_SIZE", DEFAULT_POOL_SIZE),
            max_overflow=_pool_setting("DB_MAX_OVERFLOW", DEFAULT_MAX_OVERFLOW),
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        logger.info("Async engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped AsyncSession dependency.

    Services only flush; the route (or require_policy) decides when to
    commit. Responds 503 when no database is configured.
    """
    try:
        factory = get_session_factory()
    except DatabaseNotConfiguredError:
        logger.error("Session requested without DATABASE_URL")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    async with factory() as session:
        yield session


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine (shutdown hook)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
