"""Ledger-reconciled distribution of AI inference tasks to worker nodes."""

from depin.broker import Delivery, QueueConsumer, RegistrationQueue, StreamQueue
from depin.collector import ResultCollector
from depin.config import RetryPolicy, Settings
from depin.connection import ConnectionHandle, ConnectionManager, ConnectionState
from depin.control_plane import ControlPlane
from depin.dispatcher import Dispatcher, RoundRobinCursor
from depin.errors import (
    BrokerConnectionError,
    BrokerUnavailableError,
    DepinError,
    InferenceError,
    LedgerError,
    MalformedMessageError,
)
from depin.inference import EchoInference, InferenceClient, OpenAIInference
from depin.ledger import InMemoryLedger, LedgerClient, RedisLedger
from depin.models import (
    Assignment,
    InferenceFailurePolicy,
    LedgerTaskState,
    NodeStats,
    Task,
    TaskRecord,
    TaskResult,
    TxReceipt,
    WorkerIdentity,
)
from depin.node import WorkerNode
from depin.processor import ProcessOutcome, TaskProcessor
from depin.registry import NodeRegistry, RegistrationListener
from depin.watcher import LedgerWatcher

__version__ = "0.1.0"

__all__ = [
    "Assignment",
    "BrokerConnectionError",
    "BrokerUnavailableError",
    "ConnectionHandle",
    "ConnectionManager",
    "ConnectionState",
    "ControlPlane",
    "Delivery",
    "DepinError",
    "Dispatcher",
    "EchoInference",
    "InMemoryLedger",
    "InferenceClient",
    "InferenceError",
    "InferenceFailurePolicy",
    "LedgerClient",
    "LedgerError",
    "LedgerTaskState",
    "LedgerWatcher",
    "MalformedMessageError",
    "NodeRegistry",
    "NodeStats",
    "OpenAIInference",
    "ProcessOutcome",
    "QueueConsumer",
    "RedisLedger",
    "RegistrationListener",
    "RegistrationQueue",
    "ResultCollector",
    "RetryPolicy",
    "RoundRobinCursor",
    "Settings",
    "StreamQueue",
    "Task",
    "TaskProcessor",
    "TaskRecord",
    "TaskResult",
    "TxReceipt",
    "WorkerIdentity",
    "WorkerNode",
]
