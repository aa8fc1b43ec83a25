"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from core.logging import get_logger
from models.auth import User, RefreshToken

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs = {"echo": self.settings.database_echo}
            # SQLite pools do not accept sizing arguments
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Users
    # ============================================================================

    async def create_user(self, user: User) -> User:
        async with self.get_session() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self.get_session() as session:
            result = await session.execute(
                select(User).where(User.email == email.lower().strip())
            )
            return result.scalars().first()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async with self.get_session() as session:
            result = await session.execute(select(User).where(User.id == user_id))
            return result.scalars().first()

    async def record_failed_login(self, user_id: str) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=User.failed_login_attempts + 1)
            )
            await session.commit()

    async def record_successful_login(self, user_id: str) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(failed_login_attempts=0, last_login=datetime.now(timezone.utc))
            )
            await session.commit()

    async def set_user_status(self, user_id: str, status: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                update(User).where(User.id == user_id).values(status=status)
            )
            await session.commit()
            return result.rowcount > 0

    # ============================================================================
    # Refresh Tokens
    # ============================================================================

    async def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        async with self.get_session() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record

    async def get_refresh_token(self, jti: str) -> Optional[RefreshToken]:
        async with self.get_session() as session:
            result = await session.execute(select(RefreshToken).where(RefreshToken.jti == jti))
            return result.scalars().first()

    async def consume_refresh_token(self, jti: str) -> bool:
        """Atomically revoke a live token. False if it was already revoked."""
        async with self.get_session() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.jti == jti, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True)
            )
            await session.commit()
            return result.rowcount == 1

    async def revoke_refresh_family(self, family: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.family == family, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True)
            )
            await session.commit()
            return result.rowcount

    async def revoke_user_tokens(self, user_id: str, except_jti: Optional[str] = None) -> int:
        async with self.get_session() as session:
            stmt = (
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True)
            )
            if except_jti:
                stmt = stmt.where(RefreshToken.jti != except_jti)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == session_id, RefreshToken.user_id == user_id,
                       RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True)
            )
            await session.commit()
            return result.rowcount > 0

    async def get_active_sessions(self, user_id: str) -> List[RefreshToken]:
        async with self.get_session() as session:
            result = await session.execute(
                select(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked == False)  # noqa: E712
                .order_by(RefreshToken.created_at.desc())
            )
            return [token for token in result.scalars().all() if not token.is_expired()]
