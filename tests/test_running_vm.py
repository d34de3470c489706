"""Tests for running_vm.py: the stop race and external-exit cleanup.

Uses an in-memory machine so timing is controlled by the test.
"""

import asyncio
import logging
from pathlib import Path

import pytest

from open_fire.config import JailerConfig, MachineConfig
from open_fire.exceptions import CNIError, FirecrackerAPIError
from open_fire.models import StopOutcome
from open_fire.running_vm import RunningVM
from tests.fakes import FakeMachine


def _running_vm(
    machine: FakeMachine,
    jailer: JailerConfig,
    timeout: float = 1.0,
    machine_config: MachineConfig | None = None,
) -> RunningVM:
    return RunningVM(
        machine,
        vm_id=jailer.vm_id,
        jailer=jailer,
        veth_iface_name="vethabcdefghijk",
        socket_path=Path("/srv/jailer/firecracker/vm-test/root/run/firecracker.socket"),
        shutdown_graceful_timeout_seconds=timeout,
        machine_config=machine_config,
    )


# ============================================================================
# stop()
# ============================================================================


class TestStop:
    """Graceful shutdown raced against the graceful timeout."""

    async def test_graceful(self, jailer: JailerConfig) -> None:
        machine = FakeMachine()
        vm = _running_vm(machine, jailer)

        outcome = await vm.stop()

        assert outcome is StopOutcome.GRACEFULLY
        assert machine.stop_vmm_calls == 0
        assert machine.teardown_calls == 1
        assert vm.stopped

    async def test_timeout_forces_stop(self, jailer: JailerConfig) -> None:
        machine = FakeMachine(shutdown_delay=10.0)
        vm = _running_vm(machine, jailer, timeout=0.05)

        outcome = await vm.stop()

        assert outcome is StopOutcome.FORCEFULLY
        assert machine.stop_vmm_calls == 1
        assert machine.teardown_calls == 1

    async def test_shutdown_error_forces_stop(self, jailer: JailerConfig) -> None:
        """An error within the timeout still ends in a forced kill."""
        machine = FakeMachine(shutdown_error=FirecrackerAPIError("PUT /actions failed"))
        vm = _running_vm(machine, jailer)

        outcome = await vm.stop()

        assert outcome is StopOutcome.FORCEFULLY
        assert machine.stop_vmm_calls == 1
        assert machine.teardown_calls == 1

    async def test_idempotent(self, jailer: JailerConfig) -> None:
        machine = FakeMachine(shutdown_delay=10.0)
        vm = _running_vm(machine, jailer, timeout=0.05)

        first = await vm.stop()
        second = await vm.stop()

        assert first is second is StopOutcome.FORCEFULLY
        assert machine.shutdown_calls == 1
        assert machine.stop_vmm_calls == 1
        assert machine.teardown_calls == 1

    async def test_concurrent_stops_share_outcome(self, jailer: JailerConfig) -> None:
        machine = FakeMachine(shutdown_delay=0.01)
        vm = _running_vm(machine, jailer)

        outcomes = await asyncio.gather(vm.stop(), vm.stop(), vm.stop())

        assert set(outcomes) == {StopOutcome.GRACEFULLY}
        assert machine.shutdown_calls == 1
        assert machine.teardown_calls == 1

    async def test_teardown_failure_is_logged(self, jailer: JailerConfig, caplog: pytest.LogCaptureFixture) -> None:
        machine = FakeMachine(teardown_error=CNIError("plugin failed"))
        vm = _running_vm(machine, jailer)

        with caplog.at_level(logging.ERROR, logger="open_fire"):
            outcome = await vm.stop()

        assert outcome is StopOutcome.GRACEFULLY
        assert any("CNI network cleanup failed" in r.getMessage() for r in caplog.records)

    async def test_cancellation_forces_stop_and_propagates(self, jailer: JailerConfig) -> None:
        machine = FakeMachine(shutdown_delay=10.0)
        vm = _running_vm(machine, jailer, timeout=10.0)

        task = asyncio.create_task(vm.stop())
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert machine.stop_vmm_calls == 1
        assert machine.teardown_calls == 1
        assert await vm.stop() is StopOutcome.FORCEFULLY

    async def test_stop_and_wait(self, jailer: JailerConfig) -> None:
        machine = FakeMachine(shutdown_delay=0.01)
        vm = _running_vm(machine, jailer)

        assert await vm.stop_and_wait() is StopOutcome.GRACEFULLY
        assert machine.exited.is_set()


# ============================================================================
# cleanup() / watch_exit()
# ============================================================================


class TestCleanup:
    """Exits that happen outside the supervisor's control."""

    async def test_notifies_graceful(self, jailer: JailerConfig) -> None:
        machine = FakeMachine()
        vm = _running_vm(machine, jailer)
        notify: asyncio.Queue[StopOutcome] = asyncio.Queue()

        await vm.cleanup(notify)

        assert notify.get_nowait() is StopOutcome.GRACEFULLY
        assert vm.stopped
        assert machine.teardown_calls == 1

    async def test_noop_after_stop(self, jailer: JailerConfig) -> None:
        machine = FakeMachine()
        vm = _running_vm(machine, jailer)
        notify: asyncio.Queue[StopOutcome] = asyncio.Queue()

        await vm.stop()
        await vm.cleanup(notify)

        assert notify.empty()
        assert machine.teardown_calls == 1

    async def test_stop_after_cleanup_has_no_effect(self, jailer: JailerConfig) -> None:
        machine = FakeMachine()
        vm = _running_vm(machine, jailer)

        await vm.cleanup(asyncio.Queue())
        outcome = await vm.stop()

        assert outcome is StopOutcome.GRACEFULLY
        assert machine.shutdown_calls == 0
        assert machine.teardown_calls == 1

    async def test_watch_exit(self, jailer: JailerConfig) -> None:
        machine = FakeMachine()
        vm = _running_vm(machine, jailer)
        notify: asyncio.Queue[StopOutcome] = asyncio.Queue()

        watcher = asyncio.create_task(vm.watch_exit(notify))
        await asyncio.sleep(0)
        assert not watcher.done()

        machine.exited.set()
        await watcher

        assert notify.get_nowait() is StopOutcome.GRACEFULLY
        assert machine.teardown_calls == 1


class TestClose:
    async def test_releases_machine_config(self, jailer: JailerConfig, machine_config: MachineConfig) -> None:
        released: list[str] = []
        machine_config.resources.add("marker", lambda: released.append("marker"))
        machine = FakeMachine()
        vm = _running_vm(machine, jailer, machine_config=machine_config)

        await vm.close()

        assert machine.close_calls == 1
        assert released == ["marker"]

    def test_exposes_machine_identity(self, jailer: JailerConfig) -> None:
        vm = _running_vm(FakeMachine(), jailer)
        assert vm.pid == 4242
        assert vm.ip == "192.168.1.2"
        assert vm.vm_id == "vm-test"
        assert not vm.stopped
