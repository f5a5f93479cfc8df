"""Worker node process: registers, announces itself, and consumes assignments."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from depin.broker import QueueConsumer, RegistrationQueue, StreamQueue
from depin.config import Settings
from depin.connection import ConnectionManager
from depin.inference import InferenceClient
from depin.ledger import LedgerClient
from depin.models import WorkerIdentity
from depin.processor import TaskProcessor

_log = logging.getLogger(__name__)


class WorkerNode:
    """A worker taking assignments addressed to its node id.

    Every worker reads the task stream through its own consumer group, so it
    sees every assignment and acknowledges the ones addressed to other nodes.

    Args:
        settings: Process settings.
        ledger: Ledger client signing with this node's address.
        inference: Answer generator.
        connection: Broker connection manager; built from *settings* if omitted.
        install_signal_handlers: Stop on SIGINT/SIGTERM.
        poll_timeout: Seconds each blocking queue read waits.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        ledger: LedgerClient,
        inference: InferenceClient,
        connection: ConnectionManager | None = None,
        install_signal_handlers: bool = True,
        poll_timeout: float = 2.0,
    ) -> None:
        self._settings = settings
        self._node_id = settings.resolved_node_id
        self._ledger = ledger
        self._connection = connection or ConnectionManager(
            settings.redis_url, policy=settings.retry
        )
        self._install_signal_handlers = install_signal_handlers

        self.task_queue = StreamQueue(
            self._connection,
            settings.task_queue,
            group=f"{settings.task_queue}:{self._node_id}",
            delete_on_ack=False,
        )
        self.result_queue = StreamQueue(self._connection, settings.result_queue)
        self.registration_queue = RegistrationQueue(
            self._connection, settings.registration_queue
        )
        self.processor = TaskProcessor(
            self._node_id,
            ledger,
            inference,
            self.task_queue,
            self.result_queue,
            failure_policy=settings.inference_failure_policy,
        )
        self._consumer = QueueConsumer(
            self.task_queue, self._node_id, self.processor.handle, poll_timeout=poll_timeout
        )
        self._stop = asyncio.Event()
        self._ready = asyncio.Event()

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def identity(self) -> WorkerIdentity:
        return WorkerIdentity(
            node_id=self._node_id,
            node_name=self._settings.node_name,
            address=self._ledger.address,
        )

    async def wait_ready(self) -> None:
        """Wait until the node has announced itself and is consuming."""
        await self._ready.wait()

    async def register_on_ledger(self) -> bool:
        """Register this node's address on the ledger unless already active.

        Returns ``True`` if a registration transaction was sent.
        """
        address = self._ledger.address
        if await self._ledger.is_node_active(address):
            _log.info("Node %s already registered on ledger", address)
            return False
        _log.info("Registering node %s on ledger as %s", address, self._settings.node_name)
        receipt = await self._ledger.register_node(self._settings.node_name)
        _log.info("Node registered on ledger (tx=%s)", receipt.tx_hash)
        return True

    async def announce(self) -> None:
        """Publish this node's identity on the registration queue."""
        await self.registration_queue.announce(self.identity)
        _log.info("Node %s announced on %s", self._node_id, self.registration_queue.name)

    async def start(self) -> None:
        """Connect, register, announce, and consume until :meth:`stop`."""
        _log.info(
            "Worker node %s starting (address=%s, queue=%s)",
            self._node_id,
            self._ledger.address,
            self._settings.task_queue,
        )
        await self._connection.connect()

        if self._install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_signal)

        try:
            await self.register_on_ledger()
            await self.announce()
            self._ready.set()
            _log.info("Worker node %s ready, waiting for tasks", self._node_id)
            await self._consumer.run(self._stop)
        finally:
            _log.info(
                "Worker node %s shutting down (processed=%d, failed=%d)",
                self._node_id,
                self.processor.tasks_processed,
                self.processor.tasks_failed,
            )
            if self._install_signal_handlers:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    with contextlib.suppress(ValueError, RuntimeError):
                        loop.remove_signal_handler(sig)
            await self._connection.close()

    async def stop(self) -> None:
        """Signal the node to shut down after the delivery in flight."""
        self._stop.set()

    def _handle_signal(self) -> None:
        _log.info("Worker node %s received shutdown signal", self._node_id)
        self._stop.set()
