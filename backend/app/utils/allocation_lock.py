"""Serialization boundary for read-then-assign allocations.

Pallet numbers and shapes are chosen by reading the current set of values
and picking the next free one.  Two allocators that read the same snapshot
would pick the same value, so every such allocation runs inside
`allocation_lock` for the shared resource it reads:

    pallet-number:<YYYYMMDD>   the day's numbering sequence
    pallet-shapes              the pool of shapes held by open pallets

Inside one process an asyncio.Lock per key serializes allocators.  On
PostgreSQL a transaction-scoped advisory lock per key serializes across
workers as well.  Keys are always acquired in sorted order.

`with_allocation_lock` commits before releasing, so the next allocator's
read sees the value just assigned.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

NUMBER_LOCK_PREFIX = "pallet-number:"
SHAPE_LOCK_KEY = "pallet-shapes"

_local_locks: dict[str, asyncio.Lock] = {}


def number_lock_key(ymd: str) -> str:
    return f"{NUMBER_LOCK_PREFIX}{ymd}"


def _local_lock(key: str) -> asyncio.Lock:
    lock = _local_locks.get(key)
    if lock is None:
        lock = _local_locks[key] = asyncio.Lock()
    return lock


def _is_postgres(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


@asynccontextmanager
async def allocation_lock(db: AsyncSession, *keys: str):
    """Hold the allocation locks for `keys` for the duration of the block.

    The advisory locks are transaction-scoped: the caller must commit or
    roll back before leaving the block, which `with_allocation_lock` does.
    """
    ordered = sorted(set(keys))
    acquired: list[asyncio.Lock] = []
    try:
        for key in ordered:
            lock = _local_lock(key)
            await lock.acquire()
            acquired.append(lock)
        if _is_postgres(db):
            for key in ordered:
                await db.execute(
                    text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                    {"key": key},
                )
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


async def with_allocation_lock(
    db: AsyncSession,
    keys: list[str],
    fn: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Run `fn(db)` and commit, all while holding the allocation locks.

    On any error the transaction is rolled back and the error propagates.
    """
    async with allocation_lock(db, *keys):
        try:
            result = await fn(db)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    logger.debug("Allocation committed under %s", ", ".join(sorted(keys)))
    return result
