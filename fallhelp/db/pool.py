import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import asyncpg

from fallhelp.db.schema import ddl_statements
from fallhelp.shared.config import optional_env, require_env
from fallhelp.shared.errors import PersistenceError
from fallhelp.shared.logging import log_event

logger = logging.getLogger(__name__)

DATABASE_URL = optional_env("DATABASE_URL")
PG_HOST = optional_env("PG_HOST", "localhost")
PG_PORT = int(optional_env("PG_PORT", "5432"))
PG_DB = optional_env("PG_DB", "fallhelp")
PG_USER = optional_env("PG_USER", "fallhelp")
PG_POOL_MIN = int(optional_env("PG_POOL_MIN", "2"))
PG_POOL_MAX = int(optional_env("PG_POOL_MAX", "10"))
PG_CONNECT_ATTEMPTS = int(optional_env("PG_CONNECT_ATTEMPTS", "60"))
PG_RETRY_SECONDS = float(optional_env("PG_RETRY_SECONDS", "1"))


def connect_kwargs() -> Dict[str, Any]:
    """asyncpg.create_pool arguments; PG_PASS is mandatory without DATABASE_URL."""
    sizing = {"min_size": PG_POOL_MIN, "max_size": PG_POOL_MAX}
    if DATABASE_URL:
        return {"dsn": DATABASE_URL, **sizing}
    return {
        "host": PG_HOST,
        "port": PG_PORT,
        "database": PG_DB,
        "user": PG_USER,
        "password": require_env("PG_PASS"),
        **sizing,
    }


async def _apply_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        for statement in ddl_statements():
            await conn.execute(statement)


async def create_pool(apply_schema: bool = True) -> asyncpg.Pool:
    """Create the shared pool, retrying while Postgres starts up.

    The schema is applied idempotently on the first successful connection.
    """
    if PG_CONNECT_ATTEMPTS < 1:
        raise RuntimeError(f"PG_CONNECT_ATTEMPTS must be positive, got {PG_CONNECT_ATTEMPTS}")
    kwargs = connect_kwargs()
    attempt = 0
    while True:
        attempt += 1
        pool = None
        try:
            pool = await asyncpg.create_pool(**kwargs)
            if apply_schema:
                await _apply_schema(pool)
        except (OSError, asyncpg.PostgresError) as exc:
            if pool is not None:
                await pool.close()
            if attempt >= PG_CONNECT_ATTEMPTS:
                raise
            log_event(
                logger,
                "database not ready, retrying",
                level="WARNING",
                attempt=attempt,
                error=str(exc),
            )
            await asyncio.sleep(PG_RETRY_SECONDS)
            continue
        log_event(logger, "database pool ready", attempt=attempt)
        return pool


@contextmanager
def persistence_errors(operation: str) -> Iterator[None]:
    """Re-raise driver and network failures as a retryable PersistenceError."""
    try:
        yield
    except PersistenceError:
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
        raise PersistenceError(
            f"{operation} failed: {type(exc).__name__}: {exc}",
            retryable=True,
            operation=operation,
        ) from exc
