"""Async database engine and session handling."""

import os

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from fraudcheck.config import settings


def _engine_options(database_url: str) -> dict:
    """Create the SQLite file's directory and wait on locks held by other workers."""
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return {}
    if url.database and url.database != ":memory:":
        directory = os.path.dirname(url.database)
        if directory:
            os.makedirs(directory, exist_ok=True)
    return {"connect_args": {"timeout": 30}}


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

# Session factory; objects stay usable after the per-step commits
async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    pass


async def create_tables(bind=None):
    """Create all tables on ``bind`` (defaults to the application engine)."""
    from fraudcheck.models import loan_document, verification, provider_model  # noqa: F401
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """Request-scoped session dependency."""
    async with async_session() as session:
        yield session
