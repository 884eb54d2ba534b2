"""
Database models and operations for the relay.

Uses SQLAlchemy with SQLite for registered sessions.
Note: Notifications are NOT stored on the relay - only relayed.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, String, DateTime, Boolean, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class RegisteredSession(Base):
    """A session id and the public key it was derived from"""
    __tablename__ = "sessions"

    session_id = Column(String(64), primary_key=True)
    public_key = Column(String(64), nullable=False)  # X25519 public key (hex)
    created_at = Column(DateTime, default=_utcnow)
    last_seen_at = Column(DateTime, default=_utcnow)
    is_active = Column(Boolean, default=True)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./relay.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def register_session(self, session_id: str, public_key: str) -> Optional[RegisteredSession]:
        """
        Register a session, or refresh an existing registration.

        Args:
            session_id: Session id derived from public_key
            public_key: Public key (hex)

        Returns:
            The session, or None if the id is registered to a different key
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredSession).where(RegisteredSession.session_id == session_id)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                if existing.public_key != public_key:
                    return None
                existing.last_seen_at = _utcnow()
                existing.is_active = True
                await session.commit()
                return existing

            registered = RegisteredSession(session_id=session_id, public_key=public_key)
            session.add(registered)
            await session.commit()
            await session.refresh(registered)
            return registered

    async def get_session(self, session_id: str) -> Optional[RegisteredSession]:
        """
        Get a registered session.

        Args:
            session_id: Session id to look up

        Returns:
            RegisteredSession or None if not found
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredSession).where(RegisteredSession.session_id == session_id)
            )
            return result.scalar_one_or_none()

    async def deactivate_session(self, session_id: str) -> bool:
        """Stop relaying to a session; returns False if it was not registered"""
        async with self.async_session() as session:
            result = await session.execute(
                select(RegisteredSession).where(RegisteredSession.session_id == session_id)
            )
            registered = result.scalar_one_or_none()
            if registered is None:
                return False
            registered.is_active = False
            await session.commit()
            return True

    async def close(self):
        await self.engine.dispose()
