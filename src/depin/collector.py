"""Consumes task results published by worker nodes."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from rich.console import Console
from rich.markup import escape

from depin.broker import Delivery, QueueConsumer, StreamQueue
from depin.errors import MalformedMessageError
from depin.models import TaskResult

_log = logging.getLogger(__name__)


class ResultCollector:
    """Reports each result and acknowledges it.

    A result that fails to parse is rejected without requeue and the
    collector moves on to the next message. Only the most recent
    *history* results are kept in memory; :attr:`collected` counts them all.

    Args:
        queue: Result queue with the control plane's consumer group.
        consumer_name: Consumer name inside the group.
        console: Rich console for operator output.
        poll_timeout: Seconds each blocking read waits.
        history: How many recent results :attr:`results` keeps.
    """

    def __init__(
        self,
        queue: StreamQueue,
        *,
        consumer_name: str = "control-plane",
        console: Console | None = None,
        poll_timeout: float = 2.0,
        history: int = 1000,
    ) -> None:
        self._queue = queue
        self._console = console or Console(stderr=True)
        self._results: deque[TaskResult] = deque(maxlen=history)
        self._collected = 0
        self._rejected = 0
        self._consumer = QueueConsumer(
            queue, consumer_name, self.handle, poll_timeout=poll_timeout
        )

    @property
    def results(self) -> list[TaskResult]:
        """The most recent results, oldest first."""
        return list(self._results)

    @property
    def collected(self) -> int:
        return self._collected

    @property
    def rejected(self) -> int:
        return self._rejected

    async def handle(self, delivery: Delivery) -> TaskResult | None:
        try:
            result = TaskResult.from_wire(delivery.body)
        except MalformedMessageError as exc:
            self._rejected += 1
            _log.error("Error processing result %s: %s", delivery.message_id, exc)
            await self._queue.reject(delivery, requeue=False)
            return None

        self._results.append(result)
        self._collected += 1
        _log.info(
            "Task %s completed by node %s: %s", result.task_id, result.node_id, result.answer
        )
        self._console.print(
            f"[green]✓[/green] Task [bold]{escape(result.task_id)}[/bold] "
            f"completed by [cyan]{escape(result.node_id)}[/cyan]: {escape(result.answer)}",
            markup=True,
            highlight=False,
        )
        await self._queue.ack(delivery)
        return result

    async def run(self, stop: asyncio.Event) -> None:
        await self._consumer.run(stop)
