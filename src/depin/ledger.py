"""Ledger client interface and development ledgers.

The ledger is the system of record for task lifecycle. Workers talk to it
only through :class:`LedgerClient`. Two implementations ship here:

* :class:`InMemoryLedger`: in-process, for tests and single-process demos.
  :meth:`InMemoryLedger.with_signer` gives another signer a view on the same
  book.
* :class:`RedisLedger`: task and node records kept in Redis hashes, with
  "task created" events on a Redis Stream, so separate control-plane and
  worker processes can share one development ledger.

Both reject a second assignment and a second completion of a task with
:class:`~depin.errors.LedgerError`, which is the guarantee the worker's
idempotency check relies on.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from depin.errors import LedgerError
from depin.models import NodeStats, Task, TaskRecord, TxReceipt

_log = logging.getLogger(__name__)

_tx_counter = itertools.count(1)


def _tx_hash(*parts: object) -> str:
    seed = ":".join(str(p) for p in (*parts, next(_tx_counter), time.time_ns()))
    return "0x" + hashlib.sha256(seed.encode()).hexdigest()


@runtime_checkable
class LedgerClient(Protocol):
    """Operations the distribution layer needs from the ledger."""

    @property
    def address(self) -> str:
        """Address this client signs transactions with."""
        ...

    def task_created_events(self) -> AsyncIterator[Task]:
        """Yield a :class:`Task` for every "task created" event, in ledger order."""
        ...

    async def get_task(self, task_id: str) -> TaskRecord: ...

    async def is_assigned(self, task_id: str) -> str | None: ...

    async def is_completed(self, task_id: str) -> bool: ...

    async def assign(self, task_id: str) -> TxReceipt: ...

    async def complete(self, task_id: str, answer: str) -> TxReceipt: ...

    async def get_node_stats(self, address: str) -> NodeStats: ...

    async def is_node_active(self, address: str) -> bool: ...

    async def register_node(self, name: str) -> TxReceipt: ...


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------


@dataclass
class _Book:
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    nodes: dict[str, NodeStats] = field(default_factory=dict)
    next_id: int = 1
    subscribers: list[asyncio.Queue[Task]] = field(default_factory=list)
    writes: list[tuple[str, str]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryLedger:
    """Process-local ledger.

    Args:
        address: Signer address for writes made through this instance.
        clock: Time source for timestamps.
    """

    def __init__(
        self,
        address: str = "0x0000000000000000000000000000000000000001",
        *,
        clock: Callable[[], float] = time.time,
        _book: _Book | None = None,
    ) -> None:
        self._address = address
        self._clock = clock
        self._book = _book or _Book()

    @property
    def address(self) -> str:
        return self._address

    @property
    def writes(self) -> list[tuple[str, str]]:
        """``(operation, key)`` pairs for every successful write, in order."""
        return self._book.writes

    @property
    def subscriber_count(self) -> int:
        return len(self._book.subscribers)

    def with_signer(self, address: str) -> InMemoryLedger:
        """Return a client for *address* that shares this ledger's state."""
        return InMemoryLedger(address, clock=self._clock, _book=self._book)

    # -- events --------------------------------------------------------------

    async def create_task(self, question: str) -> Task:
        """Record a new task and emit its "task created" event."""
        async with self._book.lock:
            task_id = str(self._book.next_id)
            self._book.next_id += 1
            created_at = self._clock()
            self._book.tasks[task_id] = TaskRecord(
                task_id=task_id, question=question, created_at=created_at
            )
        task = Task(task_id=task_id, question=question, created_at=created_at)
        self.emit(task)
        return task

    def emit(self, task: Task) -> None:
        """Deliver a "task created" event to current subscribers.

        Also usable on its own to simulate the ledger redelivering an event.
        """
        for queue in list(self._book.subscribers):
            queue.put_nowait(task)

    async def task_created_events(self) -> AsyncIterator[Task]:
        queue: asyncio.Queue[Task] = asyncio.Queue()
        self._book.subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._book.subscribers.remove(queue)

    # -- reads ---------------------------------------------------------------

    def _record(self, task_id: str) -> TaskRecord:
        record = self._book.tasks.get(task_id)
        if record is None:
            raise LedgerError(f"Task {task_id} does not exist")
        return record

    async def get_task(self, task_id: str) -> TaskRecord:
        return self._record(task_id)

    async def is_assigned(self, task_id: str) -> str | None:
        return (await self.get_task(task_id)).assigned_to

    async def is_completed(self, task_id: str) -> bool:
        return (await self.get_task(task_id)).completed

    def _node(self, address: str) -> NodeStats:
        return self._book.nodes.get(address, NodeStats(address=address))

    async def get_node_stats(self, address: str) -> NodeStats:
        return self._node(address)

    async def is_node_active(self, address: str) -> bool:
        return (await self.get_node_stats(address)).active

    # -- writes --------------------------------------------------------------

    async def register_node(self, name: str) -> TxReceipt:
        async with self._book.lock:
            existing = self._book.nodes.get(self._address)
            if existing is not None and existing.active:
                raise LedgerError(f"Node {self._address} already registered")
            now = self._clock()
            self._book.nodes[self._address] = NodeStats(
                address=self._address, name=name, registered_at=now, active=True
            )
            self._book.writes.append(("register_node", self._address))
        return TxReceipt(tx_hash=_tx_hash("register", self._address), confirmed_at=now)

    async def assign(self, task_id: str) -> TxReceipt:
        async with self._book.lock:
            record = self._record(task_id)
            if not self._node(self._address).active:
                raise LedgerError(f"Node {self._address} is not registered")
            if record.completed:
                raise LedgerError(f"Task {task_id} already completed")
            if record.assigned_to:
                raise LedgerError(f"Task {task_id} already assigned to {record.assigned_to}")
            self._book.tasks[task_id] = record.model_copy(update={"assigned_to": self._address})
            self._book.writes.append(("assign", task_id))
            now = self._clock()
        return TxReceipt(tx_hash=_tx_hash("assign", task_id), task_id=task_id, confirmed_at=now)

    async def complete(self, task_id: str, answer: str) -> TxReceipt:
        async with self._book.lock:
            record = self._record(task_id)
            if record.completed:
                raise LedgerError(f"Task {task_id} already completed")
            if record.assigned_to != self._address:
                raise LedgerError(f"Task {task_id} is not assigned to {self._address}")
            self._book.tasks[task_id] = record.model_copy(
                update={"answer": answer, "completed": True}
            )
            stats = self._node(self._address)
            self._book.nodes[self._address] = stats.model_copy(
                update={"tasks_completed": stats.tasks_completed + 1}
            )
            self._book.writes.append(("complete", task_id))
            now = self._clock()
        return TxReceipt(tx_hash=_tx_hash("complete", task_id), task_id=task_id, confirmed_at=now)


# ---------------------------------------------------------------------------
# Redis development ledger
# ---------------------------------------------------------------------------


class RedisLedger:
    """Development ledger kept in Redis.

    Each task is a hash at ``{prefix}task:{task_id}``; each node a hash at
    ``{prefix}node:{address}``. Task ids come from ``INCR {prefix}next_id``
    and "task created" events are appended to the ``{prefix}events`` stream.
    Assign uses ``HSETNX`` so only the first write wins. Complete checks
    the record and writes answer, flag and node counter in one
    ``WATCH``/``MULTI`` transaction.

    Args:
        redis_url: Redis connection URL.
        address: Signer address for writes made through this client.
        prefix: Key prefix.
        poll_timeout: Seconds each blocking event read waits.
        retry_delay: Seconds to wait before resuming the event stream after
            a connection error.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        address: str = "0x0000000000000000000000000000000000000001",
        prefix: str = "depin:ledger:",
        poll_timeout: float = 1.0,
        retry_delay: float = 5.0,
    ) -> None:
        self._redis_url = redis_url
        self._address = address
        self._prefix = prefix
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._redis: aioredis.Redis | None = None

    @property
    def address(self) -> str:
        return self._address

    async def connect(self) -> None:
        """Connect to Redis."""
        _log.debug("RedisLedger connecting (prefix=%s)", self._prefix)
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            _log.debug("RedisLedger disconnected")

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "RedisLedger is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    def _task_key(self, task_id: str) -> str:
        return f"{self._prefix}task:{task_id}"

    def _node_key(self, address: str) -> str:
        return f"{self._prefix}node:{address}"

    @property
    def _events_key(self) -> str:
        return f"{self._prefix}events"

    async def create_task(self, question: str) -> Task:
        """Record a new task and append its "task created" event."""
        r = self._client()
        try:
            task_id = str(await r.incr(f"{self._prefix}next_id"))
            task = Task(task_id=task_id, question=question, created_at=time.time())
            await r.hset(  # type: ignore[misc]
                self._task_key(task_id),
                mapping={
                    "task_id": task_id,
                    "question": question,
                    "created_at": str(task.created_at),
                },
            )
            await r.xadd(self._events_key, {"task": task.to_wire()})
        except RedisError as exc:
            raise LedgerError(f"Failed to create task: {exc}") from exc
        return task

    async def task_created_events(self) -> AsyncIterator[Task]:
        """Yield tasks created after the subscription started.

        A connection error pauses the stream for ``retry_delay`` seconds and
        it resumes after the last event delivered, so no event is skipped.
        Any other Redis error ends it with :class:`LedgerError`.
        """
        r = self._client()
        last_id: str | None = None
        block_ms = max(int(self._poll_timeout * 1000), 1)
        while True:
            try:
                if last_id is None:
                    latest = await r.xrevrange(self._events_key, count=1)
                    last_id = latest[0][0] if latest else "0-0"
                result = await r.xread({self._events_key: last_id}, count=10, block=block_ms)
            except (RedisConnectionError, RedisTimeoutError) as exc:
                _log.warning(
                    "Ledger event stream interrupted: %s (retrying in %.1fs)",
                    exc,
                    self._retry_delay,
                )
                await asyncio.sleep(self._retry_delay)
                continue
            except RedisError as exc:
                raise LedgerError(f"Event subscription failed: {exc}") from exc
            if not result:
                continue
            _stream, entries = result[0]
            for entry_id, fields in entries:
                last_id = entry_id
                yield Task.from_wire(fields["task"])

    async def get_task(self, task_id: str) -> TaskRecord:
        r = self._client()
        try:
            data: dict[str, str] = await r.hgetall(self._task_key(task_id))  # type: ignore[misc]
        except RedisError as exc:
            raise LedgerError(f"Failed to read task {task_id}: {exc}") from exc
        if not data:
            raise LedgerError(f"Task {task_id} does not exist")
        return self._parse_record(data)

    async def is_assigned(self, task_id: str) -> str | None:
        return (await self.get_task(task_id)).assigned_to

    async def is_completed(self, task_id: str) -> bool:
        return (await self.get_task(task_id)).completed

    async def get_node_stats(self, address: str) -> NodeStats:
        r = self._client()
        try:
            data: dict[str, str] = await r.hgetall(self._node_key(address))  # type: ignore[misc]
        except RedisError as exc:
            raise LedgerError(f"Failed to read node {address}: {exc}") from exc
        if not data:
            return NodeStats(address=address)
        raw_registered = data.get("registered_at", "")
        return NodeStats(
            address=address,
            name=data.get("name", ""),
            registered_at=float(raw_registered) if raw_registered else None,
            tasks_completed=int(data.get("tasks_completed", "0")),
            active=data.get("active", "") == "1",
        )

    async def is_node_active(self, address: str) -> bool:
        return (await self.get_node_stats(address)).active

    async def register_node(self, name: str) -> TxReceipt:
        r = self._client()
        now = time.time()
        try:
            created = await r.hsetnx(self._node_key(self._address), "active", "1")  # type: ignore[misc]
            if not created:
                raise LedgerError(f"Node {self._address} already registered")
            await r.hset(  # type: ignore[misc]
                self._node_key(self._address),
                mapping={"name": name, "registered_at": str(now), "tasks_completed": "0"},
            )
        except RedisError as exc:
            raise LedgerError(f"Failed to register node: {exc}") from exc
        return TxReceipt(tx_hash=_tx_hash("register", self._address), confirmed_at=now)

    async def assign(self, task_id: str) -> TxReceipt:
        record = await self.get_task(task_id)
        if record.completed:
            raise LedgerError(f"Task {task_id} already completed")
        if not await self.is_node_active(self._address):
            raise LedgerError(f"Node {self._address} is not registered")
        r = self._client()
        try:
            won = await r.hsetnx(self._task_key(task_id), "assigned_to", self._address)  # type: ignore[misc]
        except RedisError as exc:
            raise LedgerError(f"Failed to assign task {task_id}: {exc}") from exc
        if not won:
            current = await self.is_assigned(task_id)
            raise LedgerError(f"Task {task_id} already assigned to {current}")
        return TxReceipt(
            tx_hash=_tx_hash("assign", task_id), task_id=task_id, confirmed_at=time.time()
        )

    async def complete(self, task_id: str, answer: str) -> TxReceipt:
        r = self._client()
        key = self._task_key(task_id)
        try:
            async with r.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        data: dict[str, str] = await pipe.hgetall(key)  # type: ignore[misc]
                        if not data:
                            raise LedgerError(f"Task {task_id} does not exist")
                        record = self._parse_record(data)
                        if record.completed:
                            raise LedgerError(f"Task {task_id} already completed")
                        if record.assigned_to != self._address:
                            raise LedgerError(f"Task {task_id} is not assigned to {self._address}")
                        pipe.multi()
                        pipe.hset(
                            key,
                            mapping={
                                "answer": answer,
                                "completed": "1",
                                "completed_at": str(time.time()),
                            },
                        )
                        pipe.hincrby(self._node_key(self._address), "tasks_completed", 1)
                        await pipe.execute()
                        break
                    except WatchError:
                        # Record changed between the check and EXEC; check again.
                        continue
        except RedisError as exc:
            raise LedgerError(f"Failed to complete task {task_id}: {exc}") from exc
        return TxReceipt(
            tx_hash=_tx_hash("complete", task_id), task_id=task_id, confirmed_at=time.time()
        )

    @staticmethod
    def _parse_record(data: dict[str, str]) -> TaskRecord:
        """Convert a task hash into a :class:`TaskRecord`."""
        raw_created = data.get("created_at", "")
        return TaskRecord(
            task_id=data.get("task_id", ""),
            question=data.get("question", ""),
            created_at=float(raw_created) if raw_created else 0.0,
            assigned_to=data.get("assigned_to") or None,
            answer=data.get("answer"),
            completed=data.get("completed", "") == "1",
        )
