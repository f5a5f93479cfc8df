"""Round-robin assignment of ledger tasks to registered worker nodes."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from redis.exceptions import RedisError

from depin.broker import StreamQueue
from depin.errors import DepinError
from depin.models import Assignment, Task
from depin.registry import NodeRegistry

_log = logging.getLogger(__name__)


@dataclass
class RoundRobinCursor:
    """Position in the registry's node list.

    Only the owning :class:`Dispatcher` advances it. The index is never reset
    when nodes are added; a longer list only changes where future
    wraparounds happen.
    """

    index: int = 0

    def select(self, nodes: Sequence[str]) -> str | None:
        if not nodes:
            return None
        node = nodes[self.index % len(nodes)]
        self.index = (self.index + 1) % len(nodes)
        return node


class Dispatcher:
    """Publishes each task to the task queue, addressed to the next node.

    Args:
        registry: Source of candidate node ids.
        queue: Durable task queue to publish assignments to.
        cursor: Round-robin state; a fresh cursor when omitted.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        queue: StreamQueue,
        *,
        cursor: RoundRobinCursor | None = None,
    ) -> None:
        self._registry = registry
        self._queue = queue
        self._cursor = cursor or RoundRobinCursor()
        self._published = 0
        self._dropped = 0

    @property
    def cursor(self) -> RoundRobinCursor:
        return self._cursor

    @property
    def published(self) -> int:
        return self._published

    @property
    def dropped(self) -> int:
        return self._dropped

    def assign_next(self) -> str | None:
        """Return the next node in round-robin order, or ``None`` if there are none."""
        return self._cursor.select(self._registry.list_nodes())

    async def dispatch(self, task: Task) -> Assignment | None:
        """Assign *task* and publish it. Returns the published assignment.

        With no registered nodes the task is dropped here; the ledger still
        holds it as created. Publish failures are logged and not retried.
        """
        node_id = self.assign_next()
        if node_id is None:
            self._dropped += 1
            _log.warning("No nodes available to assign task %s", task.task_id)
            return None

        assignment = Assignment.for_task(task, node_id)
        try:
            await self._queue.publish(assignment)
        except (DepinError, RedisError) as exc:
            self._dropped += 1
            _log.error("Failed to publish task %s: %s", task.task_id, exc)
            return None

        self._published += 1
        _log.info("Task %s published to queue, assigned to node %s", task.task_id, node_id)
        return assignment
