"""Test helpers shared across modules."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

REDIS_URL = "redis://fake:6379/0"


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once.

    ``on_sleep`` runs after each recorded delay, which lets a test bring a
    simulated broker back up after a given number of retries.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.on_sleep: Callable[[int], None] | None = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll *predicate* until it is true or fail the test after *timeout*."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)
