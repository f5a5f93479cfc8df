"""Append-only registry of worker nodes eligible for assignment."""

from __future__ import annotations

import asyncio
import logging

from depin.broker import RegistrationQueue
from depin.errors import BrokerUnavailableError, MalformedMessageError
from depin.models import WorkerIdentity

_log = logging.getLogger(__name__)


class NodeRegistry:
    """Known worker ids in registration order.

    Membership only grows: there is no deregistration, so a worker that goes
    away stays eligible for assignment.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, WorkerIdentity | None] = {}

    def register(self, node_id: str, identity: WorkerIdentity | None = None) -> bool:
        """Add *node_id*. Returns ``False`` if it was already known."""
        if node_id in self._nodes:
            if identity is not None and self._nodes[node_id] is None:
                self._nodes[node_id] = identity
            return False
        self._nodes[node_id] = identity
        _log.info("Node registered: %s (total nodes: %d)", node_id, len(self._nodes))
        return True

    def list_nodes(self) -> list[str]:
        return list(self._nodes)

    def current_size(self) -> int:
        return len(self._nodes)

    def identity(self, node_id: str) -> WorkerIdentity | None:
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)


class RegistrationListener:
    """Feeds worker announcements from the registration queue into a registry."""

    def __init__(
        self,
        queue: RegistrationQueue,
        registry: NodeRegistry,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self._queue = queue
        self._registry = registry
        self._poll_timeout = poll_timeout

    def handle(self, body: str) -> WorkerIdentity | None:
        """Register the node announced in *body*; malformed bodies are dropped."""
        try:
            identity = WorkerIdentity.from_wire(body)
        except MalformedMessageError as exc:
            _log.error("Error registering node: %s", exc)
            return None
        self._registry.register(identity.node_id, identity)
        return identity

    async def run(self, stop: asyncio.Event) -> None:
        connection = self._queue.connection
        _log.info("Node registration listener active on %s", self._queue.name)
        while not stop.is_set():
            if not await connection.wait_connected(self._poll_timeout):
                if connection.closed:
                    return
                continue
            try:
                body = await self._queue.pop(timeout=self._poll_timeout)
            except BrokerUnavailableError as exc:
                _log.warning("Registration listener paused: %s", exc)
                continue
            if body is not None:
                self.handle(body)
