"""
Async PostgreSQL connection pool for the flag rollout service.

A single asyncpg pool is shared by the storage and distribution adapters. It is
created once at application startup (FastAPI lifespan) and closed on shutdown.

Connection Pool Configuration:
- min_size: 2
- max_size: 10
- command_timeout: 60 seconds

Usage:
    await init_db()
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT * FROM ab_test_events LIMIT 10")
    await close_db()
"""

import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from flag_rollout.core.config import get_settings


logger = logging.getLogger(__name__)

# None until init_db() is called
_pool: Optional[Pool] = None


async def init_db() -> Pool:
    """
    Initialize the database connection pool.

    Idempotent: returns the existing pool when already initialized.

    Raises:
        RuntimeError: If DATABASE_URL is not configured.
        asyncpg.PostgresError: If connection to the database fails.
        OSError: If the database host is unreachable.
    """
    global _pool

    if _pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not configured")

        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )
        logger.info("Database connection pool initialized")

    return _pool


async def get_db_pool() -> Pool:
    """Get the database connection pool, initializing it lazily if needed."""
    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"
    return _pool


async def close_db() -> None:
    """Close the pool gracefully. Safe to call when the pool was never created."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")
