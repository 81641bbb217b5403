from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings


def build_engine(database_url: str):
    """
    Creates the async engine. In-memory SQLite gets a single shared connection
    so the database survives across sessions.
    """
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, connect_args={"timeout": 30}, echo=False)
    return create_async_engine(
        database_url,
        pool_size=20,
        max_overflow=10,        # Allow more overflow connections during bursts
        pool_timeout=30,        # Wait up to 30s for a connection
        pool_recycle=1800,      # Recycle connections every 30 minutes
        pool_pre_ping=True,     # Test connections before using them
        echo=False,             # Set to True to see SQL queries
    )


# DATABASE_URL is already validated in settings
engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    autoflush=False,
    expire_on_commit=False,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
