"""
Database configuration and session management for the storefront order service.

This module sets up the async database engine using SQLAlchemy and provides
a session factory for the relational store.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

# Seconds a SQLite connection waits for another writer to release the database
SQLITE_LOCK_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for declarative models."""


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create the SQLAlchemy async engine.

    An in-memory SQLite URL gets a single shared connection (StaticPool) so
    every session sees the same database. That connection cannot carry two
    transactions at once, so it is only suitable for single-request use such
    as local experiments; concurrent callers need PostgreSQL or a file-backed
    SQLite database, where SQLite writers wait on the database lock.

    Args:
        database_url: e.g. postgresql+asyncpg://... or sqlite+aiosqlite:///orders.db

    Returns:
        AsyncEngine bound to the URL
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(database_url, connect_args={"timeout": SQLITE_LOCK_TIMEOUT})
    return create_async_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the AsyncSession factory used by the SQL store."""
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
