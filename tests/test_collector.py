"""Tests for ResultCollector."""

from __future__ import annotations

import asyncio
import io
from unittest.mock import MagicMock

import pytest
from helpers import wait_for
from rich.console import Console

from depin.broker import Delivery, StreamQueue
from depin.collector import ResultCollector
from depin.connection import ConnectionManager
from depin.models import TaskResult

RESULT = TaskResult(task_id="1", node_id="w1", answer="4", completed_at=10.0)


def _console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    return Console(file=buf, width=120, color_system=None), buf


class TestHandle:
    @pytest.mark.asyncio
    async def test_good_result_acked(self) -> None:
        queue = MagicMock(spec=StreamQueue)
        console, buf = _console()
        collector = ResultCollector(queue, console=console)
        delivery = Delivery(queue="r", message_id="1-0", body=RESULT.to_wire())

        assert await collector.handle(delivery) == RESULT

        queue.ack.assert_awaited_once_with(delivery)
        queue.reject.assert_not_awaited()
        assert collector.results == [RESULT]
        assert "Task 1 completed by w1: 4" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_malformed_rejected_without_requeue(self) -> None:
        queue = MagicMock(spec=StreamQueue)
        collector = ResultCollector(queue, console=_console()[0])
        delivery = Delivery(queue="r", message_id="1-0", body="{not json")

        assert await collector.handle(delivery) is None

        queue.reject.assert_awaited_once_with(delivery, requeue=False)
        queue.ack.assert_not_awaited()
        assert collector.results == []
        assert collector.rejected == 1

    @pytest.mark.asyncio
    async def test_history_is_bounded(self) -> None:
        queue = MagicMock(spec=StreamQueue)
        collector = ResultCollector(queue, console=_console()[0], history=2)
        for n in range(1, 5):
            result = TaskResult(task_id=str(n), node_id="w1", answer="a", completed_at=1.0)
            await collector.handle(Delivery(queue="r", message_id=f"{n}-0", body=result.to_wire()))

        assert [r.task_id for r in collector.results] == ["3", "4"]
        assert collector.collected == 4
        assert queue.ack.await_count == 4

    @pytest.mark.asyncio
    async def test_answer_with_markup_printed_verbatim(self) -> None:
        queue = MagicMock(spec=StreamQueue)
        console, buf = _console()
        collector = ResultCollector(queue, console=console)
        result = TaskResult(task_id="2", node_id="w1", answer="[red]x[/red]", completed_at=1.0)
        await collector.handle(Delivery(queue="r", message_id="2-0", body=result.to_wire()))
        assert "[red]x[/red]" in buf.getvalue()


class TestRun:
    @pytest.mark.asyncio
    async def test_malformed_then_good(self, connection: ConnectionManager, redis) -> None:
        queue = StreamQueue(connection, "test:results", group="test:results:group")
        collector = ResultCollector(queue, console=_console()[0], poll_timeout=0.05)
        await connection.connect()

        await queue.publish_raw("garbage")
        await queue.publish(RESULT)

        stop = asyncio.Event()
        runner = asyncio.create_task(collector.run(stop))
        await wait_for(lambda: len(collector.results) == 1)
        stop.set()
        await runner

        assert collector.results == [RESULT]
        assert collector.rejected == 1
        assert await queue.length() == 0
        pending = await redis.xpending("test:results", "test:results:group")
        assert pending["pending"] == 0
