"""Bridges ledger "task created" events into the dispatcher."""

from __future__ import annotations

import asyncio
import logging

from depin.dispatcher import Dispatcher
from depin.ledger import LedgerClient

_log = logging.getLogger(__name__)


class LedgerWatcher:
    """Dispatches every task the ledger announces, in ledger order.

    Events are handled one at a time and are not deduplicated: a task the
    ledger announces twice is dispatched twice, and the worker-side ledger
    check makes the second copy a no-op.
    """

    def __init__(self, ledger: LedgerClient, dispatcher: Dispatcher) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._task: asyncio.Task[None] | None = None
        self._seen = 0

    @property
    def seen(self) -> int:
        """Events received since start."""
        return self._seen

    async def run(self) -> None:
        """Consume the event stream until cancelled or :meth:`stop` is called."""
        self._task = asyncio.current_task()
        _log.info("Watching ledger for new tasks")
        try:
            async for task in self._ledger.task_created_events():
                self._seen += 1
                _log.info("New task created: %s - %s", task.task_id, task.question)
                await self._dispatcher.dispatch(task)
        except asyncio.CancelledError:
            _log.info("Ledger watcher stopped")
            raise
        finally:
            self._task = None

    def stop(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
