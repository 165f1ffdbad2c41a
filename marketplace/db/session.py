from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from marketplace.core.config import settings
from marketplace.core.exceptions import DatabaseError
from marketplace.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

# Global engine instance, created on first use
engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def create_database_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create and configure the async database engine."""
    global engine, AsyncSessionLocal

    if engine is not None:
        return engine

    url = database_url or settings.database_url
    if settings.is_testing:
        # NullPool keeps tests from sharing connections across event loops
        engine = create_async_engine(url, poolclass=NullPool, echo=settings.debug)
    else:
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.debug,
            connect_args={
                "command_timeout": 60,
                "server_settings": {
                    "application_name": "marketplace_api",
                    "statement_timeout": str(settings.database_statement_timeout_ms),
                },
            },
        )

    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info(
        "database.engine.created",
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        testing=settings.is_testing,
    )
    return engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if AsyncSessionLocal is None:
        create_database_engine()
    return AsyncSessionLocal


@asynccontextmanager
async def transaction_session(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Session wrapped in one transaction: commit on success, rollback on any error."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("database.transaction_error", error=str(e))
            raise DatabaseError(
                message="Database transaction failed",
                details={"error": str(e)},
            ) from e


async def create_all() -> None:
    """Create tables for local development; production schemas are migrated separately."""
    from marketplace.db.base import Base
    import marketplace.models  # noqa: F401

    async with create_database_engine().begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


async def health_check() -> dict:
    try:
        async with create_database_engine().connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            ok = result.scalar() == 1
        return {"status": "healthy" if ok else "unhealthy", "backend": "postgres"}
    except (SQLAlchemyError, OSError) as e:
        logger.error("database.health_check_failed", error=str(e))
        return {"status": "unhealthy", "backend": "postgres", "error": str(e)}


async def dispose_engine() -> None:
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
        logger.info("database.connection_closed")
    engine = None
    AsyncSessionLocal = None
