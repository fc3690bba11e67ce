"""Logging for code-grader.

The package itself only attaches a NullHandler to the ``code_grader``
logger; CODE_GRADER_LOG_LEVEL sets that logger's level at import time.
Entry points that own the terminal (the CLI) call configure_logging().

Every call site passes its correlation id and measurements through
``extra``. The CLI renders them around the message:

    DEBUG 10:02:54.120 code_grader.sandbox [3f9a1c2e4b7d:1] run process finished exit_code=0 execution_time_ms=41

Records are handed to a listener thread through a bounded queue, so a slow
terminal never stalls the event loop that supervises sandboxed processes.
A full queue drops records.
"""

import contextlib
import logging
import logging.handlers
import os
import queue
from typing import Any

import click

_PACKAGE_LOGGER = "code_grader"

# Rendered in brackets before the message, in this order
_CORRELATION_KEYS = ("execution_id", "context_id")

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_MAX_VALUE_CHARS = 200
_QUEUE_CAPACITY = 4096

logging.getLogger(_PACKAGE_LOGGER).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("CODE_GRADER_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(_PACKAGE_LOGGER).setLevel(_env_level)


def get_logger(name: str) -> logging.Logger:
    """Logger in the code_grader hierarchy; pass ``__name__``."""
    return logging.getLogger(name)


def _render_value(value: Any) -> str:
    text = value if isinstance(value, str) and value and " " not in value else repr(value)
    if len(text) > _MAX_VALUE_CHARS:
        text = text[: _MAX_VALUE_CHARS - 3] + "..."
    return text


class ContextFormatter(logging.Formatter):
    """Formats a record with the context its call site passed in ``extra``.

    Correlation ids (execution_id, context_id) go in brackets before the
    message, every other extra field follows it as key=value.
    """

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s %(asctime)s.%(msecs)03d %(name)s", datefmt="%H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:  # noqa: N802
        context = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRIBUTES}
        ids = [str(context.pop(key)) for key in _CORRELATION_KEYS if key in context]

        parts = [super().formatMessage(record)]
        if ids:
            parts.append(f"[{' '.join(ids)}]")
        parts.append(record.message)
        parts.extend(f"{key}={_render_value(value)}" for key, value in context.items())
        return " ".join(parts)


class _EchoHandler(logging.Handler):
    """Writes to stderr through click; runs on the listener thread."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            click.echo(click.style(line, dim=record.levelno < logging.WARNING), err=True)
        except BlockingIOError:
            pass  # stderr saturated: drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedEchoHandler(logging.handlers.QueueHandler):
    """Enqueues records for an _EchoHandler without ever blocking the caller."""

    def __init__(self) -> None:
        super().__init__(queue.Queue(maxsize=_QUEUE_CAPACITY))
        echo = _EchoHandler()
        echo.setFormatter(ContextFormatter())
        self.listener = logging.handlers.QueueListener(self.queue, echo)
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep exc_info and extra fields for ContextFormatter
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def configure_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Send code_grader logs to stderr (CLI entry point).

    Idempotent. Without flags the level stays as set by
    CODE_GRADER_LOG_LEVEL (WARNING when unset).

    Args:
        verbose: Show DEBUG records
        quiet: Show ERROR records only; wins over verbose
    """
    package_logger = logging.getLogger(_PACKAGE_LOGGER)
    if not any(isinstance(h, _QueuedEchoHandler) for h in package_logger.handlers):
        package_logger.addHandler(_QueuedEchoHandler())

    if quiet:
        package_logger.setLevel(logging.ERROR)
    elif verbose:
        package_logger.setLevel(logging.DEBUG)
    elif package_logger.level == logging.NOTSET:
        package_logger.setLevel(logging.WARNING)
