"""Helpers for managing groups of asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any


async def abort_all(tasks: Iterable[asyncio.Future[Any]]) -> None:
    """Cancel every task and wait until all of them have finished."""
    pending = list(tasks)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)