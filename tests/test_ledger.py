"""Tests for the in-memory and Redis development ledgers."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import fakeredis.aioredis
import pytest
from redis.asyncio.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from depin.errors import LedgerError
from depin.ledger import InMemoryLedger, LedgerClient, RedisLedger
from depin.models import LedgerTaskState

A = "0x00000000000000000000000000000000000000a1"
B = "0x00000000000000000000000000000000000000b2"


class TestInMemoryLedger:
    @pytest.fixture
    async def book(self) -> InMemoryLedger:
        return InMemoryLedger("0xowner", clock=lambda: 50.0)

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryLedger(), LedgerClient)

    @pytest.mark.asyncio
    async def test_create_task(self, book: InMemoryLedger) -> None:
        first = await book.create_task("one")
        second = await book.create_task("two")
        assert (first.task_id, second.task_id) == ("1", "2")
        assert first.created_at == 50.0
        record = await book.get_task("1")
        assert record.state is LedgerTaskState.CREATED
        assert record.question == "one"

    @pytest.mark.asyncio
    async def test_unknown_task(self, book: InMemoryLedger) -> None:
        with pytest.raises(LedgerError, match="does not exist"):
            await book.get_task("99")

    @pytest.mark.asyncio
    async def test_register_node(self, book: InMemoryLedger) -> None:
        a = book.with_signer(A)
        assert not await a.is_node_active(A)
        receipt = await a.register_node("AI_Node")
        assert receipt.tx_hash.startswith("0x")
        stats = await book.get_node_stats(A)
        assert stats.active
        assert stats.name == "AI_Node"
        assert stats.registered_at == 50.0
        with pytest.raises(LedgerError, match="already registered"):
            await a.register_node("AI_Node")

    @pytest.mark.asyncio
    async def test_assign_requires_registration(self, book: InMemoryLedger) -> None:
        await book.create_task("q")
        with pytest.raises(LedgerError, match="not registered"):
            await book.with_signer(A).assign("1")

    @pytest.mark.asyncio
    async def test_assign_and_complete(self, book: InMemoryLedger) -> None:
        await book.create_task("q")
        a = book.with_signer(A)
        await a.register_node("A")

        receipt = await a.assign("1")
        assert receipt.task_id == "1"
        assert await book.is_assigned("1") == A

        await a.complete("1", "answer")
        assert await book.is_completed("1")
        record = await book.get_task("1")
        assert record.answer == "answer"
        assert (await book.get_node_stats(A)).tasks_completed == 1

    @pytest.mark.asyncio
    async def test_second_assign_rejected(self, book: InMemoryLedger) -> None:
        await book.create_task("q")
        a, b = book.with_signer(A), book.with_signer(B)
        await a.register_node("A")
        await b.register_node("B")
        await a.assign("1")
        with pytest.raises(LedgerError, match="already assigned"):
            await b.assign("1")
        with pytest.raises(LedgerError, match="already assigned"):
            await a.assign("1")

    @pytest.mark.asyncio
    async def test_complete_rules(self, book: InMemoryLedger) -> None:
        await book.create_task("q")
        a, b = book.with_signer(A), book.with_signer(B)
        await a.register_node("A")
        await b.register_node("B")
        with pytest.raises(LedgerError, match="not assigned"):
            await a.complete("1", "early")
        await a.assign("1")
        with pytest.raises(LedgerError, match="not assigned"):
            await b.complete("1", "theft")
        await a.complete("1", "done")
        with pytest.raises(LedgerError, match="already completed"):
            await a.complete("1", "again")
        with pytest.raises(LedgerError, match="already completed"):
            await b.assign("1")

    @pytest.mark.asyncio
    async def test_event_stream(self, book: InMemoryLedger) -> None:
        events = book.task_created_events()
        pending = asyncio.ensure_future(events.__anext__())
        await asyncio.sleep(0.01)
        assert book.subscriber_count == 1

        task = await book.create_task("hello")
        assert await asyncio.wait_for(pending, 1.0) == task

        await events.aclose()
        assert book.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_writes_log(self, book: InMemoryLedger) -> None:
        await book.create_task("q")
        a = book.with_signer(A)
        await a.register_node("A")
        await a.assign("1")
        await a.complete("1", "x")
        assert book.writes == [("register_node", A), ("assign", "1"), ("complete", "1")]


class TestRedisLedger:
    @pytest.fixture
    async def ledgers(self, server):
        """Two clients on one ledger: signer A and signer B."""

        def from_url(url: str, **kwargs):
            return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

        with patch("depin.ledger.aioredis.from_url", side_effect=from_url):
            a = RedisLedger("redis://fake", address=A, poll_timeout=0.05, retry_delay=0.01)
            b = RedisLedger("redis://fake", address=B, poll_timeout=0.05, retry_delay=0.01)
            await a.connect()
            await b.connect()
        yield a, b
        await a.disconnect()
        await b.disconnect()

    def test_satisfies_protocol(self) -> None:
        assert isinstance(RedisLedger("redis://fake"), LedgerClient)

    def test_not_connected_raises(self) -> None:
        with pytest.raises(RuntimeError, match="not connected"):
            RedisLedger("redis://fake")._client()

    @pytest.mark.asyncio
    async def test_task_lifecycle(self, ledgers) -> None:
        a, b = ledgers
        task = await a.create_task("2+2?")
        assert task.task_id == "1"

        record = await b.get_task("1")
        assert record.state is LedgerTaskState.CREATED
        assert record.question == "2+2?"

        await a.register_node("A")
        await a.assign("1")
        assert await b.is_assigned("1") == A

        await a.complete("1", "4")
        record = await b.get_task("1")
        assert record.state is LedgerTaskState.COMPLETED
        assert record.answer == "4"

        stats = await b.get_node_stats(A)
        assert stats.active
        assert stats.name == "A"
        assert stats.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_unknown_task(self, ledgers) -> None:
        a, _ = ledgers
        with pytest.raises(LedgerError, match="does not exist"):
            await a.get_task("404")

    @pytest.mark.asyncio
    async def test_first_assign_wins(self, ledgers) -> None:
        a, b = ledgers
        await a.create_task("q")
        await a.register_node("A")
        await b.register_node("B")
        await a.assign("1")
        with pytest.raises(LedgerError, match="already assigned"):
            await b.assign("1")

    @pytest.mark.asyncio
    async def test_second_completion_rejected(self, ledgers) -> None:
        a, _ = ledgers
        await a.create_task("q")
        await a.register_node("A")
        await a.assign("1")
        await a.complete("1", "first")
        with pytest.raises(LedgerError, match="already completed"):
            await a.complete("1", "second")
        assert (await a.get_task("1")).answer == "first"
        assert (await a.get_node_stats(A)).tasks_completed == 1

    @pytest.mark.asyncio
    async def test_unregistered_assign(self, ledgers) -> None:
        a, _ = ledgers
        await a.create_task("q")
        with pytest.raises(LedgerError, match="not registered"):
            await a.assign("1")

    @pytest.mark.asyncio
    async def test_double_registration(self, ledgers) -> None:
        a, _ = ledgers
        await a.register_node("A")
        with pytest.raises(LedgerError, match="already registered"):
            await a.register_node("A")

    @pytest.mark.asyncio
    async def test_unknown_node_stats(self, ledgers) -> None:
        a, _ = ledgers
        stats = await a.get_node_stats(B)
        assert not stats.active
        assert stats.tasks_completed == 0

    @pytest.mark.asyncio
    async def test_event_stream(self, ledgers) -> None:
        a, b = ledgers
        events = b.task_created_events()
        pending = asyncio.ensure_future(events.__anext__())
        await asyncio.sleep(0.02)

        task = await a.create_task("hello")
        assert await asyncio.wait_for(pending, 2.0) == task
        await events.aclose()

    @pytest.mark.asyncio
    async def test_event_stream_survives_connection_error(self, ledgers) -> None:
        a, b = ledgers
        client = b._client()
        xread = client.xread
        calls = 0

        async def flaky(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RedisConnectionError("blip")
            return await xread(*args, **kwargs)

        with patch.object(client, "xread", side_effect=flaky):
            events = b.task_created_events()
            pending = asyncio.ensure_future(events.__anext__())
            await asyncio.sleep(0.05)
            task = await a.create_task("after the blip")
            assert await asyncio.wait_for(pending, 2.0) == task
            await events.aclose()
        assert calls >= 2

    @pytest.mark.asyncio
    async def test_event_stream_other_errors_raise(self, ledgers) -> None:
        _, b = ledgers
        with patch.object(b._client(), "xread", side_effect=ResponseError("WRONGTYPE")):
            events = b.task_created_events()
            with pytest.raises(LedgerError, match="WRONGTYPE"):
                await events.__anext__()

    @pytest.mark.asyncio
    async def test_failed_completion_writes_nothing(self, ledgers) -> None:
        a, _ = ledgers
        await a.create_task("q")
        await a.register_node("A")
        await a.assign("1")

        with patch.object(Pipeline, "execute", side_effect=RedisConnectionError("blip")):
            with pytest.raises(LedgerError, match="Failed to complete"):
                await a.complete("1", "lost")

        record = await a.get_task("1")
        assert not record.completed
        assert record.answer is None
        assert (await a.get_node_stats(A)).tasks_completed == 0

        await a.complete("1", "kept")
        record = await a.get_task("1")
        assert record.completed
        assert record.answer == "kept"
        assert (await a.get_node_stats(A)).tasks_completed == 1

    @pytest.mark.asyncio
    async def test_complete_requires_assignment(self, ledgers) -> None:
        a, b = ledgers
        await a.create_task("q")
        await a.register_node("A")
        await b.register_node("B")
        with pytest.raises(LedgerError, match="not assigned"):
            await a.complete("1", "early")
        await a.assign("1")
        with pytest.raises(LedgerError, match="not assigned"):
            await b.complete("1", "theft")
        with pytest.raises(LedgerError, match="does not exist"):
            await a.complete("404", "x")
