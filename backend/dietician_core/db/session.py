"""
Async database session management using SQLAlchemy 2.0.

Two engines are created: the business engine, whose sessions are observed by
``AuditCapture``, and a separate audit engine with its own connection pool so
audit records commit independently of business transactions.
"""

from collections.abc import AsyncGenerator
from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dietician_core.core.audit import AuditCapture, AuditedSession, set_audit_capture
from dietician_core.core.config import get_settings

# Global engines and session factories
_engine: AsyncEngine | None = None
_audit_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_audit_session_factory: async_sessionmaker[AsyncSession] | None = None
_audit_capture: AuditCapture | None = None


def _engine_kwargs(url: str, *, pool_size: int, max_overflow: int) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": settings.debug,
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=settings.database_pool_timeout,
        )
    return kwargs


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for business work; flushes feed the audit listener."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        sync_session_class=AuditedSession,
        expire_on_commit=False,
        autoflush=False,
    )


def build_audit_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Plain session factory used only by the audit writer."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> None:
    """
    Initialize both engines, the session factory and the audit listener.

    Called during application startup to establish the connection pools.
    """
    global _engine, _audit_engine, _session_factory, _audit_session_factory, _audit_capture

    settings = get_settings()

    _engine = create_async_engine(
        settings.database_url,
        **_engine_kwargs(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        ),
    )
    _audit_engine = create_async_engine(
        settings.audit_dsn,
        **_engine_kwargs(
            settings.audit_dsn,
            pool_size=settings.audit_database_pool_size,
            max_overflow=0,
        ),
    )

    _session_factory = build_session_factory(_engine)
    _audit_session_factory = build_audit_session_factory(_audit_engine)
    _audit_capture = AuditCapture(_audit_session_factory)
    _audit_capture.install(AuditedSession)
    set_audit_capture(_audit_capture)


async def close_db() -> None:
    """
    Flush pending audit writes and close both connection pools.

    Called during application shutdown to cleanly release resources.
    """
    global _engine, _audit_engine, _session_factory, _audit_session_factory, _audit_capture

    if _audit_capture is not None:
        await _audit_capture.drain()
        _audit_capture.uninstall()
        set_audit_capture(None)
        _audit_capture = None

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None

    if _audit_engine is not None:
        await _audit_engine.dispose()
        _audit_engine = None
        _audit_session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Yields a session for the duration of the request and ensures
    proper cleanup regardless of success or failure.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Type alias for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def get_audit_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Read-only session on the audit store."""
    if _audit_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    async with _audit_session_factory() as session:
        yield session


AuditDbSession = Annotated[AsyncSession, Depends(get_audit_db_session)]
