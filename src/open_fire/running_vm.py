"""Handle on a started microVM: stop race, exit waiting and external-exit cleanup.

State machine:
    running --stop()------> stopped (GRACEFULLY | FORCEFULLY, recorded)
    running --cleanup()---> stopped (GRACEFULLY, notified)

The ``stopped`` flag flips exactly once under an asyncio.Lock; every other
field is written at construction. A stopped VM's network is torn down once,
whichever path stopped it.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from open_fire._logging import get_logger
from open_fire.config import JailerConfig, MachineConfig
from open_fire.models import StopOutcome

logger = get_logger(__name__)


class VMProcess(Protocol):
    """What RunningVM needs from the machine it supervises."""

    @property
    def pid(self) -> int: ...

    @property
    def ip(self) -> str: ...

    async def shutdown(self) -> None: ...

    async def stop_vmm(self) -> None: ...

    async def wait(self) -> int | None: ...

    async def teardown_network(self) -> None: ...

    async def close(self) -> None: ...


def _discard_result(task: asyncio.Task[None]) -> None:
    # Retrieve the late outcome of a shutdown that lost the race so it is not reported as unhandled.
    if not task.cancelled():
        task.exception()


class RunningVM:
    """A started microVM under this process's supervision."""

    def __init__(
        self,
        machine: VMProcess,
        *,
        vm_id: str,
        jailer: JailerConfig,
        veth_iface_name: str,
        socket_path: Path,
        shutdown_graceful_timeout_seconds: float,
        machine_config: MachineConfig | None = None,
    ) -> None:
        self._machine = machine
        self.vm_id = vm_id
        self.jailer = jailer
        self.veth_iface_name = veth_iface_name
        self.socket_path = socket_path
        self._shutdown_timeout = shutdown_graceful_timeout_seconds
        self._machine_config = machine_config

        self._lock = asyncio.Lock()
        self._stopped = False
        self._outcome = StopOutcome.GRACEFULLY

    @property
    def pid(self) -> int:
        return self._machine.pid

    @property
    def ip(self) -> str:
        return self._machine.ip

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def stop(self) -> StopOutcome:
        """Stop the VM, racing a clean shutdown against the graceful timeout.

        Idempotent: later calls return the outcome recorded by the first one
        without side effects. The network is torn down after the race in every
        case; teardown failures are logged only.

        Cancellation during the race is handled like the deadline expiring
        (forced kill, network teardown) before CancelledError propagates.
        """
        async with self._lock:
            if self._stopped:
                return self._outcome
            self._stopped = True

            logger.info("Attempting VMM graceful shutdown", extra={"vm_id": self.vm_id})
            shutdown_task = asyncio.create_task(self._machine.shutdown(), name=f"shutdown-{self.vm_id}")

            try:
                done, _ = await asyncio.wait({shutdown_task}, timeout=self._shutdown_timeout)
            except asyncio.CancelledError:
                shutdown_task.cancel()
                shutdown_task.add_done_callback(_discard_result)
                self._outcome = StopOutcome.FORCEFULLY
                logger.warning("VMM stop cancelled, stopping forcefully", extra={"vm_id": self.vm_id})
                await self._force_stop()
                await self._teardown_network()
                raise

            if not done:
                shutdown_task.cancel()
                shutdown_task.add_done_callback(_discard_result)
                logger.warning(
                    "VMM failed to stop gracefully: timeout reached",
                    extra={"vm_id": self.vm_id, "timeout": self._shutdown_timeout},
                )
                await self._force_stop()
                self._outcome = StopOutcome.FORCEFULLY
            elif (error := shutdown_task.exception()) is not None:
                logger.warning(
                    "VMM stopped with error but within timeout",
                    extra={"vm_id": self.vm_id, "error": str(error), "error_type": type(error).__name__},
                )
                await self._force_stop()
                self._outcome = StopOutcome.FORCEFULLY
            else:
                logger.info("VMM stopped gracefully", extra={"vm_id": self.vm_id})
                self._outcome = StopOutcome.GRACEFULLY

            await self._teardown_network()
            return self._outcome

    async def stop_and_wait(self) -> StopOutcome:
        """Stop in a separate task while waiting for the process to exit."""
        stop_task = asyncio.create_task(self.stop(), name=f"stop-{self.vm_id}")
        logger.info("Waiting for machine to stop", extra={"vm_id": self.vm_id})
        await self.wait()
        outcome = await stop_task
        if outcome is StopOutcome.FORCEFULLY:
            logger.warning(
                "Machine was not stopped gracefully, see previous errors. "
                "The file system may not be complete; retry or proceed with caution",
                extra={"vm_id": self.vm_id},
            )
        return outcome

    async def wait(self) -> int | None:
        """Block until the VMM process exits, whatever stopped it."""
        return await self._machine.wait()

    async def cleanup(self, notify: asyncio.Queue[StopOutcome]) -> None:
        """Handle an exit that happened outside this supervisor's control.

        No-op when stop() already ran; otherwise marks the VM stopped, tears
        the network down and puts GRACEFULLY on notify.
        """
        async with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._outcome = StopOutcome.GRACEFULLY
            await self._teardown_network()
            notify.put_nowait(StopOutcome.GRACEFULLY)

    async def watch_exit(self, notify: asyncio.Queue[StopOutcome]) -> None:
        """Wait for the process to exit, then run cleanup()."""
        returncode = await self.wait()
        logger.info("VMM process exited", extra={"vm_id": self.vm_id, "returncode": returncode})
        await self.cleanup(notify)

    async def close(self) -> None:
        """Release the machine's readers/clients and the launch-time resources."""
        await self._machine.close()
        if self._machine_config is not None:
            self._machine_config.release()

    async def _force_stop(self) -> None:
        try:
            await self._machine.stop_vmm()
        except Exception as e:
            logger.error(
                "VMM forced stop failed",
                extra={"vm_id": self.vm_id, "error": str(e), "error_type": type(e).__name__},
            )
            return
        logger.warning("VMM stopped forcefully", extra={"vm_id": self.vm_id})

    async def _teardown_network(self) -> None:
        logger.info("Cleaning up CNI network", extra={"vm_id": self.vm_id, "iface": self.veth_iface_name})
        try:
            await self._machine.teardown_network()
        except Exception as e:
            logger.error(
                "CNI network cleanup failed",
                extra={"vm_id": self.vm_id, "error": str(e), "error_type": type(e).__name__},
            )
