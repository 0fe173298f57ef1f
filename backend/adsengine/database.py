"""
Engine, session factory and declarative base.

PostgreSQL via asyncpg in every deployed environment; the test suite points
DATABASE_URL at in-memory SQLite (aiosqlite), so Postgres-only engine options
are applied only when the URL is a Postgres one.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from adsengine.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _engine_options(url: str) -> dict:
    if not url.startswith("postgresql"):
        return {}
    connect_args = {"timeout": 30}
    if "rlwy.net" in url:
        # Railway's TCP proxy terminates SSL with a self-signed cert
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ctx
    return {
        "connect_args": connect_args,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Request-scoped session for read endpoints; commits on success."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """Orchestration runs open and commit their own sessions."""
    return async_session


async def init_db():
    """
    Development convenience: create any missing tables from the models.
    Production schema is owned by Alembic (`alembic upgrade head`).
    """
    import adsengine.models  # noqa: F401

    if settings.is_production:
        logger.info("Production: skipping create_all, schema managed by Alembic.")
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready: {', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
