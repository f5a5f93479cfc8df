"""Shared fixtures: an in-process Redis server and broker connections to it."""

from __future__ import annotations

from collections.abc import Callable

import fakeredis
import fakeredis.aioredis
import pytest
from helpers import REDIS_URL, RecordingSleep

from depin.connection import ConnectionManager


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def client_factory(server: fakeredis.FakeServer) -> Callable[[str], fakeredis.aioredis.FakeRedis]:
    def factory(url: str) -> fakeredis.aioredis.FakeRedis:
        return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    return factory


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def connection(client_factory, sleep: RecordingSleep):
    """A connection manager on the fake server; not yet connected."""
    manager = ConnectionManager(REDIS_URL, client_factory=client_factory, sleep=sleep)
    yield manager
    await manager.close()


@pytest.fixture
async def redis(server: fakeredis.FakeServer):
    """A direct client for inspecting the fake server."""
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()
