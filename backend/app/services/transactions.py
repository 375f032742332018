"""
Transaction boundaries for lifecycle writes.

Usage:
    async with ledger_transaction(session, "transition_order"):
        order = await lock_order(...)
        ...
    # committed here; notify afterwards
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.services.exceptions import LedgerTimeoutError, OrderingError

logger = logging.getLogger(__name__)

# lock_not_available, query_canceled (statement_timeout), deadlock_detected
_RETRYABLE_SQLSTATES = {"55P03", "57014", "40P01"}


def dialect_name(session: AsyncSession) -> str:
    bind = session.bind
    return bind.dialect.name if bind is not None else ""


def is_lock_timeout(exc: DBAPIError) -> bool:
    """True if the driver error means we gave up waiting on a lock."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


async def apply_lock_timeout(session: AsyncSession) -> None:
    """Bound lock waits for the current transaction (PostgreSQL only; SQLite uses the busy timeout)."""
    if dialect_name(session) != "postgresql":
        return
    timeout_ms = int(get_settings().LOCK_TIMEOUT_SECONDS * 1000)
    await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


@asynccontextmanager
async def ledger_transaction(session: AsyncSession, operation: str) -> AsyncIterator[AsyncSession]:
    """
    Run the block as one transaction: commit on success, roll back on any error.

    Lock timeouts surface as LedgerTimeoutError, which is safe to retry because
    nothing was committed.
    """
    try:
        await apply_lock_timeout(session)
        yield session
        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        if is_lock_timeout(e):
            logger.warning(f"{operation} timed out waiting for a lock: {e.orig}")
            raise LedgerTimeoutError(operation) from e
        raise
    except OrderingError as e:
        await session.rollback()
        logger.warning(f"{operation} rejected: {e.error_type}: {e.message}")
        raise
    except BaseException:
        await session.rollback()
        raise
