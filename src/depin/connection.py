"""Broker connection lifecycle: bounded startup retry and supervised reconnect.

All components share one :class:`ConnectionManager`. It owns the only
mutable reference to the live Redis client, wrapped in an immutable
:class:`ConnectionHandle`. Reconnecting swaps in a new handle with a higher
``generation``, so dependents that read :attr:`ConnectionManager.handle` on
every call transparently move to the new client.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from depin.config import RetryPolicy
from depin.errors import BrokerConnectionError, BrokerUnavailableError

_log = logging.getLogger(__name__)

ClientFactory = Callable[[str], aioredis.Redis]
Sleep = Callable[[float], Awaitable[None]]
Declaration = Callable[[aioredis.Redis], Awaitable[None]]
ReconnectListener = Callable[["ConnectionHandle"], Awaitable[None]]


class ConnectionState(StrEnum):
    """Lifecycle of the broker connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass(frozen=True)
class ConnectionHandle:
    """A connected broker client and the generation it belongs to."""

    client: aioredis.Redis
    generation: int


def mask_url(url: str) -> str:
    """Return *url* with credentials and database stripped, for logging."""
    try:
        parsed = urlparse(url)
        host = parsed.hostname or "unknown"
        port = parsed.port or 6379
        return f"{parsed.scheme or 'redis'}://{host}:{port}/***"
    except ValueError:
        return "redis://***"


def _default_factory(url: str) -> aioredis.Redis:
    return aioredis.from_url(url, decode_responses=True)


class ConnectionManager:
    """Connects to the broker, declares queues, and reconnects after a close.

    Startup (:meth:`connect`) tries ``policy.max_attempts`` times with
    ``policy.delay`` seconds between attempts and then fails with
    :class:`BrokerConnectionError`. A close reported later through
    :meth:`connection_lost` starts a single background reconnect task that
    retries every ``policy.backoff(attempt)`` seconds with no ceiling.

    Args:
        redis_url: Broker connection URL.
        policy: Retry settings (defaults: 5 attempts, 5 s delays).
        client_factory: Builds a client from a URL. Injected in tests.
        sleep: Awaitable delay function. Injected in tests.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        policy: RetryPolicy | None = None,
        client_factory: ClientFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._redis_url = redis_url
        self._policy = policy or RetryPolicy()
        self._factory = client_factory or _default_factory
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._handle: ConnectionHandle | None = None
        self._generation = 0
        self._ready = asyncio.Event()
        self._closed = False
        self._declarations: list[Declaration] = []
        self._listeners: list[ReconnectListener] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` was called since the last :meth:`connect`."""
        return self._closed

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._handle is not None

    @property
    def handle(self) -> ConnectionHandle:
        """The live handle. Raises :class:`BrokerUnavailableError` when disconnected."""
        if not self.is_connected or self._handle is None:
            msg = f"Broker channel unavailable (state={self._state})"
            raise BrokerUnavailableError(msg)
        return self._handle

    @property
    def channel(self) -> aioredis.Redis:
        return self.handle.client

    @property
    def reconnect_task(self) -> asyncio.Task[None] | None:
        return self._reconnect_task

    @property
    def reconnect_attempts(self) -> int:
        """Reconnect attempts made since construction."""
        return self._reconnect_attempts

    def declare(self, declaration: Declaration) -> None:
        """Run *declaration* against every new client before it is published."""
        self._declarations.append(declaration)

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Call *listener* with the new handle after every successful reconnect."""
        self._listeners.append(listener)

    async def connect(self) -> ConnectionHandle:
        """Connect with the bounded startup retry budget."""
        if self.is_connected and self._handle is not None:
            return self._handle

        self._closed = False
        self._ready.clear()
        attempts = self._policy.max_attempts
        _log.info("Connecting to broker at %s", mask_url(self._redis_url))
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                handle = await self._open()
            except (RedisError, OSError) as exc:
                last_exc = exc
                remaining = attempts - attempt
                _log.warning(
                    "Failed to connect to broker, retrying... (%d attempts left): %s",
                    remaining,
                    exc,
                )
                if remaining:
                    await self._sleep(self._policy.delay)
                continue
            _log.info("Connected to broker (generation=%d)", handle.generation)
            return handle

        msg = f"Failed to connect to broker at {mask_url(self._redis_url)}: {last_exc}"
        raise BrokerConnectionError(msg) from last_exc

    async def _open(self) -> ConnectionHandle:
        self._state = ConnectionState.CONNECTING
        client = self._factory(self._redis_url)
        try:
            await client.ping()
            for declare in self._declarations:
                await declare(client)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            with contextlib.suppress(RedisError, OSError):
                await client.aclose()
            raise

        self._generation += 1
        self._handle = ConnectionHandle(client=client, generation=self._generation)
        self._state = ConnectionState.CONNECTED
        self._ready.set()
        return self._handle

    def connection_lost(
        self, exc: BaseException | None = None, *, generation: int | None = None
    ) -> None:
        """Observer for channel close/error. Schedules one reconnect task.

        Reports about an older *generation* than the live one, repeated
        reports while a reconnect is already running, and reports after
        :meth:`close` are ignored.
        """
        if self._closed or self._state is ConnectionState.CLOSING:
            return
        if generation is not None and generation != self._generation:
            _log.debug("Ignoring close report for stale generation %d", generation)
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        if exc is not None:
            _log.error("Broker connection error: %s", exc)
        _log.warning("Broker connection closed, reconnecting...")

        stale = self._handle
        self._handle = None
        self._state = ConnectionState.DISCONNECTED
        self._ready.clear()
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(stale))

    async def _reconnect_loop(self, stale: ConnectionHandle | None) -> None:
        if stale is not None:
            with contextlib.suppress(RedisError, OSError):
                await stale.client.aclose()

        attempt = 0
        while not self._closed:
            attempt += 1
            await self._sleep(self._policy.backoff(attempt))
            if self._closed:
                return
            self._reconnect_attempts += 1
            try:
                handle = await self._open()
            except (RedisError, OSError) as exc:
                _log.warning("Reconnect attempt %d failed: %s", attempt, exc)
                continue
            _log.info("Reconnected to broker (generation=%d)", handle.generation)
            await self._notify(handle)
            return

    async def _notify(self, handle: ConnectionHandle) -> None:
        for listener in self._listeners:
            try:
                await listener(handle)
            except Exception:
                _log.exception("Reconnect listener %r failed", listener)

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until a channel is available.

        Returns ``False`` on *timeout* or once the manager is closed.
        """
        if self.is_connected:
            return True
        if self._closed:
            return False
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except TimeoutError:
            return False
        return self.is_connected

    async def close(self) -> None:
        """Stop reconnecting and close the live client."""
        self._closed = True
        self._state = ConnectionState.CLOSING
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        handle, self._handle = self._handle, None
        if handle is not None:
            with contextlib.suppress(RedisError, OSError):
                await handle.client.aclose()
        self._state = ConnectionState.DISCONNECTED
        # Wake waiters so they observe the closed state.
        self._ready.set()
        _log.info("Broker connection closed")
