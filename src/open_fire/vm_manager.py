"""Firecracker microVM lifecycle management for one host.

- start_vm(): request -> per-request configs -> provider -> RunningVM
- stop_vm(): detached stop by id/PID/arch (works for VMs from earlier runs)
- stop(): stop every VM this process started (server shutdown)

Every started VM gets an exit watcher. When the VM exits on its own (guest
power-off, crash, detached stop), the watcher tears its network down and
drops it from the registry.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from open_fire import jail
from open_fire._logging import get_logger
from open_fire.config import CNIConfig, JailerConfig, MachineConfig, StopConfig
from open_fire.handlers import default_strategy, metadata_placement
from open_fire.models import CreateVMRequest, StopOutcome, StopVMRequest
from open_fire.provider import DefaultProvider, Provider
from open_fire.running_vm import RunningVM
from open_fire.settings import Settings
from open_fire.stop_protocol import stop_vm
from open_fire.subprocess_utils import log_task_exception

logger = get_logger(__name__)

ProviderFactory = Callable[[CNIConfig, JailerConfig, MachineConfig, Settings], Provider]


def default_provider_factory(
    cni_config: CNIConfig,
    jailer: JailerConfig,
    machine_config: MachineConfig,
    settings: Settings,
) -> Provider:
    return DefaultProvider(
        cni_config,
        jailer,
        machine_config,
        socket_wait_timeout=settings.socket_wait_timeout_seconds,
    )


class VmManager:
    """Starts, tracks and stops microVMs on this host.

    Usage:
        async with VmManager(settings) as manager:
            vm = await manager.start_vm(create_request)
            message = await manager.stop_vm(stop_request)

    The registry is in-memory only. VMs left running by a previous server
    process can still be stopped through stop_vm(), which needs only the VM
    id, PID and architecture.
    """

    def __init__(self, settings: Settings, *, provider_factory: ProviderFactory = default_provider_factory):
        self.settings = settings
        self._provider_factory = provider_factory
        self._vms: dict[str, RunningVM] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._vms_lock = asyncio.Lock()

    def get_active_vms(self) -> dict[str, RunningVM]:
        """Snapshot of the registry (vm_id -> RunningVM)."""
        return dict(self._vms)

    async def start_vm(self, request: CreateVMRequest) -> RunningVM:
        """Boot a microVM for a create request.

        Raises:
            ConfigValidationError: the request is invalid
            ResourceNotFoundError: a referenced drive is missing
            LaunchError: the VM failed to boot
        """
        machine_config = MachineConfig.from_request(request, self.settings)
        jailer = JailerConfig.from_settings(self.settings, chroot_base=request.jailer_chroot_base)
        jail.validate(jailer)

        strategy = default_strategy(machine_config).add_requirements(
            lambda: metadata_placement(machine_config.metadata)
        )
        provider = self._provider_factory(
            CNIConfig.from_settings(self.settings),
            jailer,
            machine_config,
            self.settings,
        ).with_strategy(strategy)

        logger.info("Starting VM", extra={"vm_id": jailer.vm_id, "network": machine_config.cni_network_name})
        vm = await provider.start()

        async with self._vms_lock:
            self._vms[vm.vm_id] = vm
            watcher = asyncio.create_task(self._watch(vm), name=f"watch-{vm.vm_id}")
            watcher.add_done_callback(log_task_exception)
            self._watchers[vm.vm_id] = watcher

        logger.info("VM started", extra={"vm_id": vm.vm_id, "pid": vm.pid, "ip": vm.ip})
        return vm

    async def stop_vm(self, request: StopVMRequest) -> str:
        """Stop a VM by id/PID/arch and remove its jail.

        Raises:
            ConfigValidationError: vm id or arch missing, jail identity incomplete
            StopError: the architecture's stop sequence failed
        """
        cfg = StopConfig.from_request(request, self.settings)
        return await stop_vm(cfg, self.settings)

    async def _watch(self, vm: RunningVM) -> None:
        notify: asyncio.Queue[StopOutcome] = asyncio.Queue()
        try:
            await vm.watch_exit(notify)
            if not notify.empty():
                logger.info("VM exited outside supervisor control", extra={"vm_id": vm.vm_id})
        finally:
            async with self._vms_lock:
                self._vms.pop(vm.vm_id, None)
                self._watchers.pop(vm.vm_id, None)
            await vm.close()

    async def stop(self) -> None:
        """Stop every VM started by this manager and wait for their watchers."""
        vms = self.get_active_vms()
        if not vms:
            return
        logger.info("Stopping all VMs", extra={"count": len(vms)})
        results = await asyncio.gather(*(vm.stop_and_wait() for vm in vms.values()), return_exceptions=True)
        for vm_id, result in zip(vms, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("VM stop failed", extra={"vm_id": vm_id, "error": str(result)})

        watchers = list(self._watchers.values())
        await asyncio.gather(*watchers, return_exceptions=True)

    async def __aenter__(self) -> VmManager:
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.stop()
