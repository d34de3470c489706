"""Helpers around the jailer child process and its background tasks."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from open_fire import constants
from open_fire._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from open_fire.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def drain_subprocess_output(process: ProcessWrapper, *, process_name: str, vm_id: str) -> None:
    """Forward the VMM's stdout (debug) and stderr (warning) to the log until both close.

    Both pipes are read at once; a full pipe would otherwise stall Firecracker.
    """

    async def forward(stream: asyncio.StreamReader, level: int, channel: str) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.log(level, f"[{process_name} {channel}] {line}", extra={"vm_id": vm_id})

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(forward(process.stdout, constants.VMM_STDOUT_LOG_LEVEL, "stdout"))
        if process.stderr:
            tg.create_task(forward(process.stderr, constants.VMM_STDERR_LOG_LEVEL, "stderr"))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback reporting the failure of a detached task (FIFO reader, exit watcher)."""
    if task.cancelled() or task.exception() is None:
        return
    logger.error("Background task failed", extra={"task_name": task.get_name()}, exc_info=task.exception())


async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Block until Firecracker's API socket exists and accepts a connection.

    abort_check runs on every poll and may raise to stop waiting, e.g. once
    the jailer has exited.

    Raises:
        TimeoutError: the socket was not accepting connections within timeout
    """
    async with asyncio.timeout(timeout):
        while True:
            if abort_check is not None:
                abort_check()
            if path.exists():
                try:
                    _, writer = await asyncio.open_unix_connection(str(path))
                except (ConnectionRefusedError, ConnectionResetError, FileNotFoundError):
                    pass
                else:
                    writer.close()
                    await writer.wait_closed()
                    return
            await asyncio.sleep(constants.SOCKET_POLL_INTERVAL_SECONDS)
