"""
Database utilities and connection management
"""

from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from typing import AsyncGenerator

from clockwork.config.settings import settings

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_recycle=300,
)

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

class Base(DeclarativeBase):
    """Base class for all database models"""
    pass

def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

def get_async_session():
    """Get async database session context manager"""
    return AsyncSessionLocal()

async def create_tables():
    """Create all database tables"""
    async with engine.begin() as conn:
        # Import all models to ensure they're registered
        from clockwork.models import (
            account, dependent, billing_event, invoice, scheduled_task, usage, notification
        )
        await conn.run_sync(Base.metadata.create_all)
