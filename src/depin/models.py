"""Data models for ledger-reconciled task distribution.

Wire payloads use camelCase keys (``taskId``, ``assignedNode``); attributes
are snake_case. Both spellings are accepted when parsing.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from depin.errors import MalformedMessageError

_WIRE_CONFIG: dict[str, Any] = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}


class WireModel(BaseModel):
    """Base for payloads that travel through the broker as JSON."""

    model_config = _WIRE_CONFIG

    @classmethod
    def from_wire(cls, body: str | bytes) -> Self:
        """Parse a JSON payload, raising :class:`MalformedMessageError`."""
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raw = body.decode(errors="replace") if isinstance(body, bytes) else body
            msg = f"Invalid {cls.__name__} payload: {exc.error_count()} error(s)"
            raise MalformedMessageError(msg, body=raw) from exc

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class Task(WireModel):
    """A unit of work created by the ledger. Identity is ``task_id``."""

    task_id: str = Field(min_length=1)
    question: str
    created_at: float

    @field_validator("task_id", mode="before")
    @classmethod
    def _coerce_task_id(cls, value: Any) -> Any:
        # Ledger ids are integers on chain.
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class Assignment(Task):
    """A task paired with the worker it was dispatched to."""

    assigned_node: str = Field(min_length=1)

    @classmethod
    def for_task(cls, task: Task, node_id: str) -> Assignment:
        return cls(**task.model_dump(), assigned_node=node_id)

    def task(self) -> Task:
        return Task(task_id=self.task_id, question=self.question, created_at=self.created_at)


class TaskResult(WireModel):
    """Completion message emitted by a worker after the ledger write."""

    task_id: str = Field(min_length=1)
    node_id: str = Field(min_length=1)
    answer: str
    completed_at: float


class WorkerIdentity(WireModel):
    """Identity a worker announces on the registration queue."""

    node_id: str = Field(min_length=1)
    node_name: str = ""
    address: str = ""


class LedgerTaskState(StrEnum):
    """Lifecycle of a task as recorded by the ledger."""

    CREATED = "created"
    ASSIGNED = "assigned"
    COMPLETED = "completed"


class InferenceFailurePolicy(StrEnum):
    """What a worker does when the inference client fails.

    ``SUBMIT_ERROR`` completes the task on the ledger with the error text as
    its answer. ``RETRY`` requeues the delivery. ``FAIL`` acknowledges the
    delivery and leaves the task assigned but incomplete on the ledger.
    """

    SUBMIT_ERROR = "submit_error"
    RETRY = "retry"
    FAIL = "fail"


class TaskRecord(BaseModel):
    """Snapshot of one task as the ledger currently sees it."""

    model_config = {"frozen": True}

    task_id: str
    question: str = ""
    created_at: float = 0.0
    assigned_to: str | None = None
    answer: str | None = None
    completed: bool = False

    @property
    def state(self) -> LedgerTaskState:
        if self.completed:
            return LedgerTaskState.COMPLETED
        if self.assigned_to:
            return LedgerTaskState.ASSIGNED
        return LedgerTaskState.CREATED


class TxReceipt(BaseModel):
    """Confirmation of a ledger write."""

    model_config = {"frozen": True}

    tx_hash: str
    task_id: str | None = None
    confirmed_at: float = 0.0


class NodeStats(BaseModel):
    """Per-node counters kept by the ledger."""

    model_config = {"frozen": True}

    address: str
    name: str = ""
    registered_at: float | None = None
    tasks_completed: int = 0
    active: bool = False
