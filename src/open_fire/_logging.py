"""Logging for open-fire.

Library modules log through ``get_logger(__name__)`` under the ``open_fire``
root, which only carries a NullHandler until an entry point (``open-fire
serve`` / ``open-fire stop``) calls configure_logging().

Records are handed to a bounded queue and written to stderr by a listener
thread, so a slow terminal never stalls the event loop supervising VMs.
A record carrying ``extra={"vm_id": ...}`` is tagged with the VM id:

    WARNING [2026-02-25 10:02:54] open_fire.running_vm - VMM stopped forcefully [vm_id=vm1]

``OPEN_FIRE_LOG_LEVEL`` sets the initial level.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "open_fire"

_root = logging.getLogger(LIBRARY_LOGGER_NAME)
_root.addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("OPEN_FIRE_LOG_LEVEL", "").strip().upper())
if _env_level:
    _root.setLevel(_env_level)

_QUEUE_CAPACITY = 4096


class _VmFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s [%(asctime)s] %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        vm_id = getattr(record, "vm_id", None)
        return f"{line} [vm_id={vm_id}]" if vm_id else line


class _StderrHandler(logging.Handler):
    """Writes formatted records with click.echo; runs on the listener thread."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedHandler(logging.handlers.QueueHandler):
    """Enqueues records for the listener; drops them when the queue is full."""

    def __init__(self) -> None:
        super().__init__(queue.Queue(maxsize=_QUEUE_CAPACITY))
        target = _StderrHandler()
        target.setFormatter(_VmFormatter())
        self._listener = logging.handlers.QueueListener(self.queue, target)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record.
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Attach the stderr handler once and set the level.

    Args:
        level: e.g. "DEBUG" or logging.INFO; overrides OPEN_FIRE_LOG_LEVEL
        quiet: errors only, wins over level
    """
    if not any(isinstance(h, _QueuedHandler) for h in _root.handlers):
        _root.addHandler(_QueuedHandler())

    if quiet:
        _root.setLevel(logging.ERROR)
    elif level is not None:
        _root.setLevel(level.upper() if isinstance(level, str) else level)
