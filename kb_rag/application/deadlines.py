"""Deadline wrapper for calls that leave the process."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from kb_rag.domain.errors import RequestTimeoutError

T = TypeVar("T")


async def with_deadline(aw: Awaitable[T], seconds: float | None, operation: str) -> T:
    """Await `aw` for at most `seconds` (None or <= 0 means no deadline).

    Expiry cancels the awaitable and raises RequestTimeoutError naming `operation`.
    """
    if not seconds or seconds <= 0:
        return await aw
    try:
        async with asyncio.timeout(seconds):
            return await aw
    except RequestTimeoutError:
        raise
    except TimeoutError as ex:
        raise RequestTimeoutError(operation, seconds) from ex
