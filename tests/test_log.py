"""Tests for depin.log."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator

import pytest

from depin.log import JsonFormatter, LogContext, TextFormatter, configure_from_env, configure_logging


@pytest.fixture(autouse=True)
def _depin_logger() -> Iterator[logging.Logger]:
    root = logging.getLogger("depin")
    root.handlers.clear()
    yield root
    root.handlers.clear()
    root.setLevel(logging.NOTSET)


def _record(msg: str = "hello", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="depin.processor", level=level, pathname="", lineno=0, msg=msg, args=(), exc_info=None
    )


class TestLogContext:
    def test_nesting_merges_and_restores(self) -> None:
        with LogContext(node_id="w1"):
            with LogContext(task_id="7"):
                assert LogContext.fields() == {"node_id": "w1", "task_id": "7"}
            assert LogContext.fields() == {"node_id": "w1"}
        assert LogContext.fields() == {}

    def test_inner_value_shadows_outer(self) -> None:
        with LogContext(task_id="1"), LogContext(task_id="2"):
            assert LogContext.fields() == {"task_id": "2"}

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_fields(self) -> None:
        seen: dict[str, dict] = {}

        async def work(task_id: str) -> None:
            with LogContext(task_id=task_id):
                await asyncio.sleep(0.01)
                seen[task_id] = LogContext.fields()

        await asyncio.gather(work("a"), work("b"))
        assert seen == {"a": {"task_id": "a"}, "b": {"task_id": "b"}}


class TestFormatters:
    def test_text_line(self) -> None:
        with LogContext(task_id="42", node_id="w1"):
            line = TextFormatter().format(_record("Assigning task"))
        assert "INFO" in line
        assert "depin.processor task_id=42 node_id=w1 Assigning task" in line

    def test_text_without_fields(self) -> None:
        assert "depin.processor hello" in TextFormatter().format(_record())

    def test_json_fields_are_top_level(self) -> None:
        with LogContext(task_id="1"):
            entry = json.loads(JsonFormatter().format(_record("done", logging.WARNING)))
        assert entry["task_id"] == "1"
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "depin.processor"
        assert entry["message"] == "done"


class TestConfigureLogging:
    def test_installs_one_handler(self, _depin_logger: logging.Logger) -> None:
        assert configure_logging("DEBUG") is _depin_logger
        assert len(_depin_logger.handlers) == 1
        assert _depin_logger.level == logging.DEBUG

    def test_second_call_keeps_handler(self, _depin_logger: logging.Logger) -> None:
        configure_logging("INFO")
        configure_logging("DEBUG", "json")
        assert len(_depin_logger.handlers) == 1
        assert isinstance(_depin_logger.handlers[0].formatter, TextFormatter)
        assert _depin_logger.level == logging.INFO

    def test_force_replaces_own_handler_only(self, _depin_logger: logging.Logger) -> None:
        foreign = logging.NullHandler()
        _depin_logger.addHandler(foreign)
        configure_logging("INFO")
        configure_logging("WARNING", "json", force=True)
        assert foreign in _depin_logger.handlers
        assert len(_depin_logger.handlers) == 2
        assert isinstance(_depin_logger.handlers[-1].formatter, JsonFormatter)
        assert _depin_logger.level == logging.WARNING

    def test_unknown_level_is_info(self, _depin_logger: logging.Logger) -> None:
        configure_logging("LOUD")
        assert _depin_logger.level == logging.INFO

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="xml"):
            configure_logging("INFO", "xml")

    def test_records_carry_bound_fields(
        self, _depin_logger: logging.Logger, capsys: pytest.CaptureFixture[str]
    ) -> None:
        configure_logging("INFO", "json")
        with LogContext(task_id="9"):
            logging.getLogger("depin.processor").info("Processing task")
        entry = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert entry["task_id"] == "9"
        assert entry["message"] == "Processing task"


class TestConfigureFromEnv:
    def test_nothing_set(self, _depin_logger: logging.Logger) -> None:
        assert not configure_from_env({})
        assert _depin_logger.handlers == []

    def test_debug_wins(self, _depin_logger: logging.Logger) -> None:
        assert configure_from_env({"DEPIN_DEBUG": "1", "DEPIN_LOG_LEVEL": "ERROR"})
        assert _depin_logger.level == logging.DEBUG

    def test_level_and_format(self, _depin_logger: logging.Logger) -> None:
        configure_from_env({"DEPIN_LOG_LEVEL": "warning", "DEPIN_LOG_FORMAT": "json"})
        assert _depin_logger.level == logging.WARNING
        assert isinstance(_depin_logger.handlers[0].formatter, JsonFormatter)

    def test_unknown_format_falls_back_to_text(self, _depin_logger: logging.Logger) -> None:
        configure_from_env({"DEPIN_LOG_FORMAT": "yaml"})
        assert isinstance(_depin_logger.handlers[0].formatter, TextFormatter)
