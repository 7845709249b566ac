"""
Elevate Engine - Transactional Database Operations

Utilities for the all-or-nothing award path:
- TransactionContext: one connection, one transaction, commit or roll back
- insert_if_absent: INSERT ... ON CONFLICT DO NOTHING RETURNING id, reported
  as a tagged InsertOutcome instead of a caught unique violation

Usage:
    from elevate.core.transactions import TransactionContext, insert_if_absent

    async with TransactionContext() as conn:
        async with conn.cursor(row_factory=dict_row) as cur:
            outcome = await insert_if_absent(cur, "INSERT ... RETURNING id", params)
            if isinstance(outcome, AlreadyExists):
                ...  # duplicate, nothing written
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Mapping, Union

import psycopg

from ..db import get_pool
from .errors import TransientFailure
from .logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Insert Outcome
# =============================================================================


@dataclass(frozen=True)
class Inserted:
    """The row was written; row_id is its primary key."""

    row_id: Any


@dataclass(frozen=True)
class AlreadyExists:
    """A row with the same unique key was already present. Nothing written."""


InsertOutcome = Union[Inserted, AlreadyExists]


async def insert_if_absent(
    cur: psycopg.AsyncCursor[Any],
    query: str,
    params: Mapping[str, Any],
) -> InsertOutcome:
    """
    Run an INSERT ... ON CONFLICT DO NOTHING RETURNING id statement.

    A returned row means this transaction won the unique key; no row means
    another transaction (or an earlier delivery) already holds it.
    """
    await cur.execute(query, params)
    row = await cur.fetchone()
    if row is None:
        return AlreadyExists()
    row_id = row["id"] if isinstance(row, Mapping) else row[0]
    return Inserted(row_id)


# =============================================================================
# Transaction Context Manager
# =============================================================================


@asynccontextmanager
async def TransactionContext() -> AsyncGenerator[psycopg.AsyncConnection, None]:
    """
    Async context manager for database transactions.

    Commits on success, rolls back on any exception including cancellation
    by a request timeout.

    Raises:
        TransientFailure: the connection pool is not available.

    Usage:
        async with TransactionContext() as conn:
            await conn.execute("INSERT ...")
            await conn.execute("UPDATE ...")
            # Commits automatically if no exception
    """
    pool = await get_pool()
    if pool is None:
        raise TransientFailure("Database is not available")

    async with pool.connection() as conn:
        await conn.set_autocommit(False)

        try:
            yield conn
            await conn.commit()
        except BaseException:
            await conn.rollback()
            logger.warning("Transaction rolled back")
            raise
