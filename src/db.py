"""
Shared asyncpg pool for the Postgres usage store.

The pool is opened by the first query that needs it and closed from the
application lifespan. Concurrent first callers wait on one lock, so a
burst of requests at startup still builds a single pool.
"""

import asyncio
import logging
from typing import Optional

import asyncpg

from src.config import get_settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


async def get_pool() -> Optional[asyncpg.Pool]:
    """Return the process pool, opening it on first use. None when no DSN is set."""
    global _pool
    if _pool is not None:
        return _pool

    database = get_settings().database
    dsn = database.dsn
    if not dsn:
        return None

    async with _pool_lock:
        if _pool is None:
            min_size = database.database_pool_min_size
            max_size = max(min_size, database.database_pool_max_size)
            # Transaction-mode poolers cannot keep prepared statements
            _pool = await asyncpg.create_pool(
                dsn=dsn,
                min_size=min_size,
                max_size=max_size,
                command_timeout=database.database_command_timeout,
                statement_cache_size=0,
            )
            logger.info(f"Opened usage database pool ({min_size}-{max_size} connections)")
    return _pool


async def close_pool() -> None:
    """Close the pool if one was opened. Safe to call more than once."""
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()
        logger.info("Closed usage database pool")
