"""
Database helper functions for common patterns.
Reduces boilerplate in the repository layer.
"""

import functools
from collections.abc import Sequence
from typing import Any

import psycopg

from app.db.pool import get_db_connection, get_db_transaction
from app.infrastructure.observability.logging import get_logger
from app.utils.retry import RetryClass, RetryDecision, RetryExhausted, RetryPolicy, retry_async

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable

    @property
    def is_unique_violation(self) -> bool:
        return isinstance(self.__cause__, psycopg.errors.UniqueViolation)


def _wrap_error(e: psycopg.Error, operation: str) -> DatabaseError:
    # Connection-level problems are worth another attempt, constraint/data errors are not
    recoverable = isinstance(e, psycopg.OperationalError)
    return DatabaseError(f"Query failed: {e}", operation=operation, recoverable=recoverable)


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Dict with row data or None if no results
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                row = await cur.fetchone()
                return row if row else None
        else:
            async with await get_db_connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    row = await cur.fetchone()
                    return row if row else None

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise _wrap_error(e, "fetch_one") from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """
    Execute query and return all rows as list of dicts.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        List of dicts with row data
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
        else:
            async with await get_db_connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise _wrap_error(e, "fetch_all") from e


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """Execute query and return the first column of the first row."""
    row = await fetch_one(query, params, connection=connection)
    return list(row.values())[0] if row else None


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """
    Execute query and return number of affected rows.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Number of affected rows
    """
    try:
        if connection:
            cursor = await connection.execute(query, params)
            return cursor.rowcount
        else:
            async with await get_db_connection() as conn:
                cursor = await conn.execute(query, params)
                return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise _wrap_error(e, "execute") from e


async def execute_many(
    query: str,
    params_seq: Sequence[tuple],
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> int:
    """
    Run one statement for every parameter tuple inside a single transaction.

    Returns:
        Number of parameter sets executed
    """
    if not params_seq:
        return 0

    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.executemany(query, params_seq)
        else:
            async with await get_db_transaction() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(query, params_seq)
        return len(params_seq)

    except psycopg.Error as e:
        logger.error(
            "Database executemany error",
            query=query[:100],
            batch_size=len(params_seq),
            error=str(e),
        )
        raise _wrap_error(e, "execute_many") from e


def _classify_db_error(exc: BaseException) -> RetryDecision:
    if isinstance(exc, psycopg.OperationalError):
        return RetryDecision(RetryClass.TRANSIENT)
    if isinstance(exc, DatabaseError) and exc.recoverable:
        return RetryDecision(RetryClass.TRANSIENT)
    return RetryDecision(RetryClass.FATAL)


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Decorator to retry database operations on temporary failures.

    Connection-level errors back off through the shared retry utility.
    Integrity and data errors are permanent and raised immediately.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries (exponential backoff)
    """
    policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay, max_delay=5.0)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await retry_async(
                    lambda: func(*args, **kwargs),
                    classify=_classify_db_error,
                    policies={RetryClass.TRANSIENT: policy},
                    operation_name=func.__name__,
                )
            except RetryExhausted as e:
                raise DatabaseError(
                    f"Operation failed after {max_retries} retries: {e.last_error}",
                    operation=func.__name__,
                    recoverable=False,
                ) from e.last_error
            except DatabaseError:
                raise
            except psycopg.Error as e:
                logger.error("Database operation failed with permanent error", error=str(e))
                raise DatabaseError(
                    f"Permanent database error: {e}", operation=func.__name__, recoverable=False
                ) from e

        return wrapper

    return decorator
