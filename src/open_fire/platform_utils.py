"""Process handling utilities.

Provides PID-reuse safe process management wrappers around asyncio
subprocesses and PIDs discovered from outside the current process.
"""

import asyncio
import contextlib
import itertools
import os
import signal

import psutil

from open_fire.exceptions import ProcessNotFoundError


def describe_exit(returncode: int | None) -> str:
    """Human-readable exit description.

    Negative return codes are signals, as reported by asyncio and psutil.
    None means the process was not our child and its status is unknown.
    """
    if returncode is None:
        return "process exited"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name.removeprefix("SIG").lower()
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"
    return f"exit status: {returncode}"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    Protects against PID reuse edge cases where OS recycles PIDs.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if not self.psutil_proc:
            return self.async_proc.returncode is None

        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    @property
    def stdout(self):
        return self.async_proc.stdout

    @property
    def stderr(self):
        return self.async_proc.stderr

    async def terminate(self) -> None:
        """Send SIGTERM without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        elif self.async_proc.returncode is None:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Send SIGKILL without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        elif self.async_proc.returncode is None:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit, bounded by timeout.

        Pipes are drained by the background reader started at launch, so this
        only waits for the exit status.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]


class ExternalProcess:
    """A process known only by PID, e.g. a VM started by an earlier server run.

    Only psutil is available for such processes; waiting runs in a worker
    thread because psutil's wait() blocks.
    """

    def __init__(self, pid: int) -> None:
        """Resolve pid.

        Raises:
            ProcessNotFoundError: pid is 0 or no such process exists
        """
        if pid <= 0:
            raise ProcessNotFoundError("failed to find process, pid is not set", context={"pid": pid})
        try:
            self.psutil_proc = psutil.Process(pid)
        except psutil.NoSuchProcess as e:
            raise ProcessNotFoundError(f"failed to find process with pid {pid}", context={"pid": pid}) from e
        self.pid = pid

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit; returns the exit code when the process was our child.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        try:
            return await asyncio.to_thread(self.psutil_proc.wait, timeout)
        except psutil.TimeoutExpired as e:
            raise TimeoutError(f"process {self.pid} still running after {timeout}s") from e
        except psutil.NoSuchProcess:
            return None

    async def kill(self) -> None:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            await asyncio.to_thread(self.psutil_proc.kill)

    async def is_firecracker_for(self, vm_id: str) -> bool:
        """True when the process is a Firecracker VMM started with ``--id vm_id``."""
        try:
            cmdline = await asyncio.to_thread(self.psutil_proc.cmdline)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False
        if not cmdline or "firecracker" not in os.path.basename(cmdline[0]):
            return False
        return any(flag == "--id" and value == vm_id for flag, value in itertools.pairwise(cmdline))
