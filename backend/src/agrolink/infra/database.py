"""Async database engine and session management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from agrolink.app.config import get_settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all AgroLink models."""
    pass


settings = get_settings()

_is_sqlite = settings.database_url.startswith("sqlite")


def _engine_options(database_url: str) -> dict:
    """Engine kwargs for the configured backend.

    SQLite serializes writers, and webhook deliveries land while chat and
    negotiation writes are in progress, so wait for the lock instead of
    failing fast. Server databases get a small pool sized for one API worker.
    """
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))

# Objects stay readable after commit; services serialize them post-commit.
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency: one session per request."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create all tables. There are no migrations; the schema is owned by the models."""
    import agrolink.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # WAL lets contract reads proceed while a payment completion commits;
    # the journal mode cannot change inside the schema transaction.
    if _is_sqlite:
        async with engine.connect() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
