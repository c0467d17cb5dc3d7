"""
Async database engine, declarative base and session dependency.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from config import async_database_url, settings


db_url = async_database_url(settings.DATABASE_URL)

if db_url.startswith("sqlite"):
    engine = create_async_engine(
        db_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_async_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Yield a request-scoped session."""
    async with async_session_maker() as session:
        yield session
