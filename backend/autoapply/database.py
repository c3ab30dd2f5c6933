import os

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session
from autoapply.config import get_settings

settings = get_settings()


def to_async_url(url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:///"""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_session_factory(url: str) -> async_sessionmaker[AsyncSession]:
    """
    Build an async session factory bound to its own engine.

    Services receive a session factory rather than a session so that
    background pipelines never share a session with the request that
    started them.
    """
    engine = create_async_engine(to_async_url(url), echo=False)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async_session = create_session_factory(settings.database_url)
engine = async_session.kw["bind"]

# Synchronous engine for Celery tasks
sync_database_url = settings.database_url
sync_engine = create_engine(sync_database_url, echo=False)
SyncSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)


class Base(DeclarativeBase):
    pass


def get_db_session() -> Session:
    """
    Get synchronous database session for Celery tasks.

    Returns:
        SQLAlchemy Session (caller must close)
    """
    return SyncSessionLocal()


async def init_db(session_factory: async_sessionmaker[AsyncSession] = async_session):
    """Create all tables on the engine behind ``session_factory``."""
    # Register models on Base.metadata
    import autoapply.models  # noqa: F401

    bind = session_factory.kw["bind"]
    database = bind.url.database
    if bind.url.get_backend_name() == "sqlite" and database and database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
