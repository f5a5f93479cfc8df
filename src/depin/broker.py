"""Redis-backed broker queues for assignments, results, and registrations.

* :class:`StreamQueue` is a durable queue on a Redis Stream read through a
  consumer group (``XADD`` / ``XREADGROUP`` / ``XACK``).
* :class:`RegistrationQueue` is a non-durable list (``RPUSH`` / ``BLPOP``)
  with no acknowledgement tracking.
* :class:`QueueConsumer` runs a consume loop with a delivery credit of one.

Every broker call goes through the shared :class:`ConnectionManager`; a lost
connection is reported to it and surfaces as
:class:`~depin.errors.BrokerUnavailableError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from depin.connection import ConnectionHandle, ConnectionManager
from depin.errors import BrokerUnavailableError
from depin.models import WireModel

_log = logging.getLogger(__name__)

T = TypeVar("T")

_PAYLOAD_FIELD = "payload"


@dataclass(frozen=True)
class Delivery:
    """One message handed to a consumer, pending until acked or rejected."""

    queue: str
    message_id: str
    body: str
    redelivered: bool = False


class _BrokerQueue:
    def __init__(self, connection: ConnectionManager, name: str) -> None:
        self._connection = connection
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    async def _call(self, what: str, op: Callable[[aioredis.Redis], Awaitable[T]]) -> T:
        handle = self._connection.handle
        try:
            return await op(handle.client)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._connection.connection_lost(exc, generation=handle.generation)
            msg = f"Broker connection lost during {what} on {self._name}"
            raise BrokerUnavailableError(msg) from exc


class StreamQueue(_BrokerQueue):
    """Durable queue stored as a Redis Stream.

    Args:
        connection: Shared connection manager.
        name: Stream key.
        group: Consumer group read by :meth:`fetch`. Publisher-only queues
            leave it ``None``.
        delete_on_ack: Remove entries once acknowledged. Disable when several
            consumer groups read the same stream.
        maxlen: Approximate cap on stream length applied on publish.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        name: str,
        *,
        group: str | None = None,
        delete_on_ack: bool = True,
        maxlen: int | None = None,
    ) -> None:
        super().__init__(connection, name)
        self._group = group
        self._delete_on_ack = delete_on_ack
        self._maxlen = maxlen
        if group is not None:
            connection.declare(self.declare)

    @property
    def group(self) -> str | None:
        return self._group

    async def declare(self, client: aioredis.Redis) -> None:
        """Ensure the stream and its consumer group exist."""
        if self._group is None:
            return
        try:
            await client.xgroup_create(self._name, self._group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            # Group already exists.
            if "BUSYGROUP" not in str(exc):
                raise

    def _require_group(self) -> str:
        if self._group is None:
            msg = f"Queue {self._name} has no consumer group"
            raise RuntimeError(msg)
        return self._group

    async def publish(self, message: WireModel) -> str:
        """Append *message* to the stream and return its entry id."""
        payload = message.to_wire()
        return await self.publish_raw(payload)

    async def publish_raw(self, payload: str) -> str:
        fields = {_PAYLOAD_FIELD: payload}
        if self._maxlen is not None:
            maxlen = self._maxlen
            return await self._call(
                "publish",
                lambda r: r.xadd(self._name, fields, maxlen=maxlen, approximate=True),
            )
        return await self._call("publish", lambda r: r.xadd(self._name, fields))

    async def fetch(
        self,
        consumer: str,
        *,
        timeout: float = 2.0,
        pending: bool = False,
        after: str = "0",
    ) -> Delivery | None:
        """Read one entry for *consumer*.

        With ``pending=True`` the consumer's own unacknowledged entries with
        ids greater than *after* are read instead of new ones; they come back
        flagged ``redelivered``. Returns ``None`` when nothing is available within *timeout*.
        """
        group = self._require_group()
        while True:
            try:
                result = await self._call(
                    "fetch",
                    lambda r: r.xreadgroup(
                        group,
                        consumer,
                        {self._name: after if pending else ">"},
                        count=1,
                        block=None if pending else max(int(timeout * 1000), 1),
                    ),
                )
            except aioredis.ResponseError as exc:
                if "NOGROUP" not in str(exc):
                    raise
                _log.warning("Consumer group %s missing on %s, recreating", group, self._name)
                await self._call("declare", self.declare)
                continue

            if not result:
                return None
            _stream, messages = result[0]
            if not messages:
                return None
            msg_id, fields = messages[0]
            if not fields:
                # Entry was deleted while still pending for this consumer.
                await self._call("ack", lambda r: r.xack(self._name, group, msg_id))
                continue
            return Delivery(
                queue=self._name,
                message_id=msg_id,
                body=fields[_PAYLOAD_FIELD],
                redelivered=pending,
            )

    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge *delivery*, removing it from the queue."""
        group = self._require_group()
        await self._call("ack", lambda r: r.xack(self._name, group, delivery.message_id))
        if self._delete_on_ack:
            await self._call("ack", lambda r: r.xdel(self._name, delivery.message_id))

    async def reject(self, delivery: Delivery, *, requeue: bool) -> None:
        """Reject *delivery*.

        With *requeue* the entry stays pending for this consumer and is
        handed out again by its next pending read. Other consumer groups on
        the stream never see it twice. Without *requeue* it is acknowledged
        and dropped.
        """
        if requeue:
            _log.debug("Left %s pending on %s for redelivery", delivery.message_id, self._name)
            return
        _log.debug("Dropped %s on %s", delivery.message_id, self._name)
        await self.ack(delivery)

    async def length(self) -> int:
        return await self._call("length", lambda r: r.xlen(self._name))


class RegistrationQueue(_BrokerQueue):
    """Non-durable queue of worker announcements.

    Entries are popped on delivery; nothing tracks whether the consumer
    handled them.
    """

    async def announce(self, message: WireModel) -> None:
        payload = message.to_wire()
        await self._call("announce", lambda r: r.rpush(self._name, payload))

    async def pop(self, *, timeout: float = 1.0) -> str | None:
        """Pop the oldest announcement, waiting up to *timeout* seconds."""
        result: Any = await self._call(
            "pop", lambda r: r.blpop([self._name], timeout=max(timeout, 0.01))
        )
        if not result:
            return None
        _key, value = result
        return value


Handler = Callable[[Delivery], Awaitable[Any]]


class QueueConsumer:
    """Consume loop over a :class:`StreamQueue` with one delivery in flight.

    The handler owns the ack/reject decision. The next entry is fetched only
    after the handler returns, which is the consumer's delivery credit of one.

    The consumer drains its own pending entries after startup, after every
    reconnect, and whenever a read for new entries comes back empty. That is
    how deliveries left unacknowledged on an old channel, and deliveries
    rejected with requeue, are handed out again. Each drain pass walks the
    pending list once, so a message that is always requeued is retried at
    most once per idle poll.

    Args:
        queue: Queue to read; must have a consumer group.
        consumer: Consumer name inside the group.
        handler: Coroutine called with each delivery.
        poll_timeout: Seconds each blocking read waits.
    """

    def __init__(
        self,
        queue: StreamQueue,
        consumer: str,
        handler: Handler,
        *,
        poll_timeout: float = 2.0,
    ) -> None:
        self._queue = queue
        self._consumer = consumer
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._drain_pending = True
        self._pending_cursor = "0"
        self._handled = 0
        queue.connection.add_reconnect_listener(self._on_reconnect)

    @property
    def handled(self) -> int:
        return self._handled

    async def _on_reconnect(self, handle: ConnectionHandle) -> None:
        _log.info(
            "Consumer %s re-established on %s (generation=%d)",
            self._consumer,
            self._queue.name,
            handle.generation,
        )
        self._drain_pending = True
        self._pending_cursor = "0"

    async def _next(self) -> Delivery | None:
        if self._drain_pending:
            delivery = await self._queue.fetch(
                self._consumer, pending=True, after=self._pending_cursor
            )
            if delivery is not None:
                self._pending_cursor = delivery.message_id
                return delivery
            self._drain_pending = False
            self._pending_cursor = "0"
        delivery = await self._queue.fetch(self._consumer, timeout=self._poll_timeout)
        if delivery is None:
            self._drain_pending = True
        return delivery

    async def run(self, stop: asyncio.Event) -> None:
        """Consume until *stop* is set or the connection manager is closed."""
        connection = self._queue.connection
        _log.info("Consumer %s listening on %s", self._consumer, self._queue.name)
        while not stop.is_set():
            if not await connection.wait_connected(self._poll_timeout):
                if connection.closed:
                    _log.info("Consumer %s stopping: connection closed", self._consumer)
                    return
                continue
            try:
                delivery = await self._next()
                if delivery is None:
                    continue
                await self._handler(delivery)
                self._handled += 1
            except asyncio.CancelledError:
                raise
            except BrokerUnavailableError as exc:
                _log.warning("Consumer %s paused: %s", self._consumer, exc)
                self._drain_pending = True
                self._pending_cursor = "0"
            except Exception:
                _log.exception(
                    "Consumer %s error on %s, retrying in %.1fs",
                    self._consumer,
                    self._queue.name,
                    self._poll_timeout,
                )
                await asyncio.sleep(self._poll_timeout)
