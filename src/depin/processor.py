"""Worker-side handling of task assignments."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import StrEnum

from depin.broker import Delivery, StreamQueue
from depin.errors import InferenceError, LedgerError, MalformedMessageError
from depin.inference import InferenceClient, error_answer
from depin.ledger import LedgerClient
from depin.log import LogContext
from depin.models import Assignment, InferenceFailurePolicy, TaskResult

_log = logging.getLogger(__name__)


class ProcessOutcome(StrEnum):
    """What :meth:`TaskProcessor.handle` did with a delivery."""

    COMPLETED = "completed"
    FOREIGN = "foreign"
    ALREADY_COMPLETED = "already_completed"
    ASSIGNED_ELSEWHERE = "assigned_elsewhere"
    MALFORMED = "malformed"
    REQUEUED = "requeued"
    ABANDONED = "abandoned"


class _RetryInference(Exception):
    """Inference failed and the policy asks for redelivery."""


class TaskProcessor:
    """Turns an assignment into a ledger completion and a published result.

    For each delivery addressed to this node the ledger is consulted first:
    a completed task is acknowledged untouched, an unassigned one is assigned
    to this node before inference runs. The result is published only after
    the ledger completion is confirmed, and the delivery is acknowledged last.
    Any failure before that point requeues the delivery.

    Args:
        node_id: Identifier assignments are addressed to.
        ledger: Ledger client signing as this node.
        inference: Answer generator.
        task_queue: Queue the deliveries come from.
        result_queue: Queue results are published to.
        failure_policy: Handling of inference failures.
        clock: Time source for ``completed_at``.
    """

    def __init__(
        self,
        node_id: str,
        ledger: LedgerClient,
        inference: InferenceClient,
        task_queue: StreamQueue,
        result_queue: StreamQueue,
        *,
        failure_policy: InferenceFailurePolicy = InferenceFailurePolicy.SUBMIT_ERROR,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._node_id = node_id
        self._ledger = ledger
        self._inference = inference
        self._task_queue = task_queue
        self._result_queue = result_queue
        self._policy = failure_policy
        self._clock = clock
        self._tasks_processed = 0
        self._tasks_failed = 0

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def tasks_processed(self) -> int:
        return self._tasks_processed

    @property
    def tasks_failed(self) -> int:
        return self._tasks_failed

    async def handle(self, delivery: Delivery) -> ProcessOutcome:
        try:
            assignment = Assignment.from_wire(delivery.body)
        except MalformedMessageError as exc:
            _log.error("Error processing task message %s: %s", delivery.message_id, exc)
            await self._task_queue.reject(delivery, requeue=True)
            return ProcessOutcome.MALFORMED

        if assignment.assigned_node != self._node_id:
            await self._task_queue.ack(delivery)
            return ProcessOutcome.FOREIGN

        with LogContext(task_id=assignment.task_id, node_id=self._node_id):
            try:
                outcome = await self._process(assignment)
            except _RetryInference:
                self._tasks_failed += 1
                await self._task_queue.reject(delivery, requeue=True)
                return ProcessOutcome.REQUEUED
            except (LedgerError, InferenceError) as exc:
                self._tasks_failed += 1
                _log.error("Error processing task %s: %s", assignment.task_id, exc)
                await self._task_queue.reject(delivery, requeue=True)
                return ProcessOutcome.REQUEUED
            except Exception:
                self._tasks_failed += 1
                _log.exception("Unexpected error processing task %s", assignment.task_id)
                await self._task_queue.reject(delivery, requeue=True)
                return ProcessOutcome.REQUEUED

            await self._task_queue.ack(delivery)
            return outcome

    async def _process(self, assignment: Assignment) -> ProcessOutcome:
        task_id = assignment.task_id
        _log.info("Processing task %s: %s", task_id, assignment.question)

        record = await self._ledger.get_task(task_id)
        if record.completed:
            _log.info("Task %s already completed", task_id)
            return ProcessOutcome.ALREADY_COMPLETED

        address = self._ledger.address
        if not record.assigned_to:
            _log.info("Assigning task %s to self", task_id)
            receipt = await self._ledger.assign(task_id)
            _log.info("Task %s assigned (tx=%s)", task_id, receipt.tx_hash)
        elif record.assigned_to != address:
            _log.warning(
                "Task %s is assigned to %s on the ledger, skipping", task_id, record.assigned_to
            )
            return ProcessOutcome.ASSIGNED_ELSEWHERE

        try:
            answer = await self._inference.answer(assignment.question)
        except InferenceError as exc:
            _log.error("Error generating answer for task %s: %s", task_id, exc)
            if self._policy is InferenceFailurePolicy.RETRY:
                raise _RetryInference from exc
            if self._policy is InferenceFailurePolicy.FAIL:
                self._tasks_failed += 1
                return ProcessOutcome.ABANDONED
            answer = error_answer(exc)

        _log.info("Generated answer for task %s: %s", task_id, answer)
        receipt = await self._ledger.complete(task_id, answer)
        _log.info("Task %s completed on ledger (tx=%s)", task_id, receipt.tx_hash)

        result = TaskResult(
            task_id=task_id, node_id=self._node_id, answer=answer, completed_at=self._clock()
        )
        await self._result_queue.publish(result)
        self._tasks_processed += 1

        try:
            stats = await self._ledger.get_node_stats(address)
        except LedgerError as exc:
            _log.warning("Could not read node stats for %s: %s", address, exc)
        else:
            _log.info("Node stats: %d tasks completed", stats.tasks_completed)
        return ProcessOutcome.COMPLETED
