"""Control-plane process: registration, dispatch, and result collection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from rich.console import Console

from depin.broker import RegistrationQueue, StreamQueue
from depin.collector import ResultCollector
from depin.config import Settings
from depin.connection import ConnectionManager
from depin.dispatcher import Dispatcher
from depin.ledger import LedgerClient
from depin.registry import NodeRegistry, RegistrationListener
from depin.watcher import LedgerWatcher

_log = logging.getLogger(__name__)

TASK_STREAM_MAXLEN = 10_000


class ControlPlane:
    """Wires the registry, dispatcher, watcher, and collector on one connection.

    Args:
        settings: Process settings.
        ledger: Ledger client providing "task created" events.
        connection: Broker connection manager; built from *settings* if omitted.
        console: Rich console for result output.
        install_signal_handlers: Stop on SIGINT/SIGTERM.
        poll_timeout: Seconds each blocking queue read waits.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        ledger: LedgerClient,
        connection: ConnectionManager | None = None,
        console: Console | None = None,
        install_signal_handlers: bool = True,
        poll_timeout: float = 2.0,
    ) -> None:
        self._settings = settings
        self._connection = connection or ConnectionManager(
            settings.redis_url, policy=settings.retry
        )
        self._install_signal_handlers = install_signal_handlers

        self.registry = NodeRegistry()
        self.task_queue = StreamQueue(
            self._connection, settings.task_queue, maxlen=TASK_STREAM_MAXLEN
        )
        self.result_queue = StreamQueue(
            self._connection, settings.result_queue, group=f"{settings.result_queue}:group"
        )
        self.registration_queue = RegistrationQueue(
            self._connection, settings.registration_queue
        )
        self.dispatcher = Dispatcher(self.registry, self.task_queue)
        self.watcher = LedgerWatcher(ledger, self.dispatcher)
        self.collector = ResultCollector(
            self.result_queue, console=console, poll_timeout=poll_timeout
        )
        self.listener = RegistrationListener(
            self.registration_queue, self.registry, poll_timeout=min(poll_timeout, 1.0)
        )
        self._stop = asyncio.Event()
        self._ready = asyncio.Event()

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    async def wait_ready(self) -> None:
        """Wait until all loops are running."""
        await self._ready.wait()

    async def start(self) -> None:
        """Connect and run until :meth:`stop` or a signal."""
        _log.info("Control plane starting")
        await self._connection.connect()

        if self._install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._handle_signal)

        watcher_task = asyncio.create_task(self.watcher.run())
        watcher_task.add_done_callback(self._on_watcher_done)
        try:
            self._ready.set()
            _log.info("Control plane ready")
            await asyncio.gather(
                self.collector.run(self._stop),
                self.listener.run(self._stop),
            )
        finally:
            if not watcher_task.done():
                watcher_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher_task
            _log.info(
                "Control plane shutting down (nodes=%d, published=%d, dropped=%d, results=%d)",
                self.registry.current_size(),
                self.dispatcher.published,
                self.dispatcher.dropped,
                self.collector.collected,
            )
            if self._install_signal_handlers:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    with contextlib.suppress(ValueError, RuntimeError):
                        loop.remove_signal_handler(sig)
            await self._connection.close()

    def _on_watcher_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("Ledger watcher failed: %s", exc)
        self._stop.set()

    async def stop(self) -> None:
        self._stop.set()

    def _handle_signal(self) -> None:
        _log.info("Control plane received shutdown signal")
        self._stop.set()
