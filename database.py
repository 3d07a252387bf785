"""
Database Configuration and Session Management
============================================

Builds the async engine and session factory for the Subscription Bot.
Nothing here is created at import time: the startup sequence builds one
engine and one session factory and passes them to the services.
"""

import asyncio
import logging
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import OperationalError, DBAPIError
from models import Base

logger = logging.getLogger(__name__)


def to_async_database_url(database_url: str) -> str:
    """Convert a plain postgres URL to the asyncpg driver form"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    async_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode' parameter
    async_url = async_url.replace("sslmode=require", "ssl=require")
    async_url = async_url.replace("sslmode=prefer", "ssl=prefer")
    async_url = async_url.replace("sslmode=disable", "ssl=disable")
    return async_url


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine; pool settings only apply to postgres"""
    async_url = to_async_database_url(database_url)

    if async_url.startswith("sqlite"):
        return create_async_engine(async_url, echo=echo)

    return create_async_engine(
        async_url,
        pool_size=5,           # Low request volume - small pool is enough
        max_overflow=10,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "server_settings": {
                "application_name": "subscription_bot_async",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,
            "command_timeout": 30,
        }
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # CRITICAL: Prevent greenlet errors in background tasks
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables"""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✅ Database tables created successfully")
    except Exception as e:
        logger.error(f"❌ Error creating database tables: {e}")
        raise


async def test_connection(engine: AsyncEngine, retries: int = 5, delay: float = 2.0) -> bool:
    """
    Check the database is reachable, retrying with a fixed delay.

    Returns False once every attempt has failed; the caller decides whether
    that is fatal.
    """
    last_error: Optional[Exception] = None
    for attempt in range(1, retries + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info(f"✅ Database connection established (attempt {attempt}/{retries})")
            return True
        except (OperationalError, DBAPIError, OSError) as e:
            last_error = e
            logger.warning(f"⚠️ Database connection attempt {attempt}/{retries} failed: {e}")
            if attempt < retries:
                await asyncio.sleep(delay)

    logger.critical(f"🚨 Database unreachable after {retries} attempts: {last_error}")
    return False
