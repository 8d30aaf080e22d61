"""Logging setup for qemu-testbed.

Modules log through get_logger(__name__) and attach structured context with
``extra={"instance_id": ..., "ports": [...]}``. The library itself only
installs a NullHandler; the qemu-testbed CLI calls configure_logging(),
which prints records to stderr as:

    WARNING [2026-02-25 10:02:54] lifecycle qemu-usbip-1700000000-4242: Boot attempt (attempt=2)

QEMU_TESTBED_LOG_LEVEL sets the initial level (e.g. "DEBUG").

Records are handed to a QueueListener thread, so a slow or blocked stderr
never stalls the event loop while an instance is booting.
"""

import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_testbed"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("QEMU_TESTBED_LOG_LEVEL", "").strip().upper())
if _env_level:  # NOTSET and unknown names leave the level alone
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord has; anything else came in through extra=
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> dict[str, object]:
    """The ``extra`` fields of a record, in the order they were passed."""
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class InstanceFormatter(logging.Formatter):
    """Formats records with the instance id up front and other context as key=value."""

    def __init__(self) -> None:
        super().__init__(datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        context = record_context(record)
        instance_id = context.pop("instance_id", None)
        source = record.name.removeprefix(f"{LIBRARY_LOGGER_NAME}.")
        if instance_id is not None:
            source = f"{source} {instance_id}"

        text = f"{record.levelname} [{self.formatTime(record, self.datefmt)}] {source}: {record.getMessage()}"
        if context:
            text += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr, dimmed on a TTY. Runs on the listener thread."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(InstanceFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedHandler(logging.handlers.QueueHandler):
    """QueueHandler owning the listener that drains it."""

    def __init__(self) -> None:
        q: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep extra= values as objects, formatting happens on the listener
        return record

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send qemu_testbed logs to stderr (CLI entry point).

    Installs the queued stderr handler once; later calls only change the
    level. quiet=True limits output to errors and wins over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueuedHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
