"""Async helpers shared by ingestion and search."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from knowledge_rag.errors import EmbeddingError

_T = TypeVar("_T")


async def throttled_gather(
    coros: list[Awaitable[_T]],
    semaphore: asyncio.Semaphore,
    return_exceptions: bool = True,
) -> list[_T | BaseException]:
    """Like ``asyncio.gather`` but at most ``semaphore``-many awaitables run at once.

    Results come back in input order.
    """

    async def _wrapped(coro: Awaitable[_T]) -> _T:
        async with semaphore:
            return await coro

    return await asyncio.gather(*(_wrapped(c) for c in coros), return_exceptions=return_exceptions)


async def with_deadline(
    awaitable: Awaitable[_T],
    timeout: float | None,
    *,
    source: str | None = None,
    stage: str = "embed",
) -> _T:
    """Await *awaitable*, raising :class:`EmbeddingError` after *timeout* seconds.

    ``None`` (or a non-positive value) waits indefinitely.
    """
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise EmbeddingError(f"timed out after {timeout:g}s", source=source, stage=stage) from None
