"""Log output for control-plane and worker processes.

Modules log through ``logging.getLogger(__name__)``; this module only decides
where those records go and how they look. :func:`configure_logging` puts one
stderr handler on the ``depin`` logger that renders each record as a single
text line or a JSON object.

Fields bound with :class:`LogContext` are attached to every record emitted
inside the block, so a worker's lines carry the ``task_id`` and ``node_id``
they belong to::

    with LogContext(task_id="42", node_id="w1"):
        _log.info("Assigning task to self")
    # 12:00:01 INFO    depin.processor task_id=42 node_id=w1 Assigning task to self
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

_ROOT = "depin"

_bound: ContextVar[tuple[tuple[str, Any], ...]] = ContextVar("depin_log_fields", default=())


class LogContext:
    """Bind fields to the log records emitted inside a ``with`` block.

    Nested blocks add to the outer fields and restore them on exit. The
    bindings live in a context variable, so each asyncio task sees only
    the fields bound in its own call chain.
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._tokens: list[Token[tuple[tuple[str, Any], ...]]] = []

    def __enter__(self) -> LogContext:
        merged = dict(_bound.get())
        merged.update(self._fields)
        self._tokens.append(_bound.set(tuple(merged.items())))
        return self

    def __exit__(self, *exc_info: object) -> None:
        _bound.reset(self._tokens.pop())

    @staticmethod
    def fields() -> dict[str, Any]:
        """Fields bound in the current context."""
        return dict(_bound.get())


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.fields = LogContext.fields()
        return True


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = getattr(record, "fields", None)
    return LogContext.fields() if fields is None else fields


class TextFormatter(logging.Formatter):
    """``time LEVEL logger key=value ... message`` on one line."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)-7s %(name)s%(field_text)s %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.field_text = "".join(f" {k}={v}" for k, v in _record_fields(record).items())
        return super().format(record)


class JsonFormatter(logging.Formatter):
    """One JSON object per record; bound fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = dict(_record_fields(record))
        entry.update(
            time=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_FORMATTERS: dict[str, type[logging.Formatter]] = {
    "text": TextFormatter,
    "json": JsonFormatter,
}


class _Handler(logging.StreamHandler):
    """The stderr handler installed by :func:`configure_logging`."""

    def __init__(self, formatter: logging.Formatter) -> None:
        super().__init__(sys.stderr)
        self.setFormatter(formatter)
        self.addFilter(_ContextFilter())


def _level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return logging.getLevelNamesMapping().get(value.upper(), logging.INFO)


def configure_logging(
    level: str | int = "INFO",
    fmt: str = "text",
    *,
    force: bool = False,
) -> logging.Logger:
    """Install the ``depin`` handler and return the ``depin`` logger.

    A second call leaves an installed handler alone unless *force* is set,
    in which case the handler is replaced. Handlers added by anything else
    are never touched.

    Args:
        level: Level name or number. Unknown names mean INFO.
        fmt: ``"text"`` or ``"json"``.
        force: Replace an already installed handler.

    Raises:
        ValueError: *fmt* is not a known format.
    """
    if fmt not in _FORMATTERS:
        msg = f"Unknown log format {fmt!r}; expected one of {sorted(_FORMATTERS)}"
        raise ValueError(msg)

    root = logging.getLogger(_ROOT)
    installed = [h for h in root.handlers if isinstance(h, _Handler)]
    if installed and not force:
        return root
    for handler in installed:
        root.removeHandler(handler)
    root.addHandler(_Handler(_FORMATTERS[fmt]()))
    root.setLevel(_level(level))
    return root


def configure_from_env(environ: Mapping[str, str] | None = None) -> bool:
    """Reconfigure from ``DEPIN_DEBUG``, ``DEPIN_LOG_LEVEL`` and ``DEPIN_LOG_FORMAT``.

    ``DEPIN_DEBUG=1`` wins over the level variable; an unknown format falls
    back to text. Returns ``False`` and changes nothing when none of the
    variables is set.
    """
    env = os.environ if environ is None else environ
    if not any(key in env for key in ("DEPIN_DEBUG", "DEPIN_LOG_LEVEL", "DEPIN_LOG_FORMAT")):
        return False
    level = "DEBUG" if env.get("DEPIN_DEBUG") == "1" else env.get("DEPIN_LOG_LEVEL", "INFO")
    fmt = env.get("DEPIN_LOG_FORMAT", "text")
    configure_logging(level, fmt if fmt in _FORMATTERS else "text", force=True)
    return True
