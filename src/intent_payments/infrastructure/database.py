from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


logger = structlog.get_logger()


class Database:
    """Async engine plus session factory shared by every request in the process."""

    def __init__(self, database_url: str, pool_size: int = 10, max_overflow: int = 20) -> None:
        self.engine = create_async_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def advisory_lock(self, key: str) -> AsyncGenerator[None, None]:
        """Hold a transaction-scoped advisory lock on ``key`` on a dedicated connection.

        The lock is released when the block exits, also when the block raises or the
        connection drops, so a crashed holder never leaves it behind.
        """
        async with self.engine.connect() as conn, conn.begin():
            await conn.execute(
                text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"),
                {"key": key},
            )
            yield

    async def health_check(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("database_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.engine.dispose()
