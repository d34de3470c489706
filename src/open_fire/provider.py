"""Launch backends.

A Provider turns per-request configuration into a started RunningVM. The
default provider boots a jailed Firecracker through the handler pipeline;
alternative backends only need to satisfy the Provider protocol.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from open_fire import constants, jail
from open_fire._logging import get_logger
from open_fire.cni import CNIRuntime
from open_fire.config import CNIConfig, JailerConfig, MachineConfig
from open_fire.exceptions import LaunchError
from open_fire.handlers import default_strategy
from open_fire.launch_spec import build_launch_spec
from open_fire.machine import Machine, default_handlers
from open_fire.placement import PlacingStrategy
from open_fire.resource_cleanup import cleanup_directory, cleanup_process
from open_fire.running_vm import RunningVM

logger = get_logger(__name__)


class Provider(Protocol):
    async def start(self) -> RunningVM: ...

    def with_strategy(self, strategy: PlacingStrategy) -> Provider: ...


class DefaultProvider:
    """Boots a jailed Firecracker microVM."""

    def __init__(
        self,
        cni_config: CNIConfig,
        jailer: JailerConfig,
        machine_config: MachineConfig,
        *,
        socket_wait_timeout: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS,
    ) -> None:
        self._cni_config = cni_config
        self._jailer = jailer
        self._machine_config = machine_config
        self._socket_wait_timeout = socket_wait_timeout
        self._strategy = default_strategy(machine_config)

    def with_strategy(self, strategy: PlacingStrategy) -> DefaultProvider:
        self._strategy = strategy
        return self

    async def start(self) -> RunningVM:
        """Build the launch spec, resolve the boot pipeline and boot.

        Configuration problems surface unchanged before anything is spawned.
        Failures after that are wrapped in LaunchError once the partially
        started VM has been torn down.

        Raises:
            ConfigValidationError: invalid drive/vsock/network/FIFO options
            ResourceNotFoundError: an additional drive is missing
            AnchorNotFoundError: the strategy anchors on an unknown handler
            LaunchError: the VM failed to boot
        """
        try:
            spec = build_launch_spec(self._machine_config, self._jailer)
            pipeline = self._strategy.resolve(default_handlers())
        except Exception:
            self._machine_config.release()
            raise

        logger.debug("Boot pipeline resolved", extra={"vm_id": spec.vm_id, "handlers": pipeline.names()})

        machine = Machine(
            spec,
            cni=CNIRuntime(self._cni_config),
            handler_list=pipeline,
            socket_wait_timeout=self._socket_wait_timeout,
            log_http_calls=self._machine_config.log_http_calls,
        )

        try:
            await machine.start()
        except asyncio.CancelledError:
            await self._cleanup_failed_launch(machine)
            raise
        except LaunchError:
            await self._cleanup_failed_launch(machine)
            raise
        except Exception as e:
            await self._cleanup_failed_launch(machine)
            raise LaunchError(
                f"failed to start machine: {e}",
                context={"vm_id": spec.vm_id, "error_type": type(e).__name__},
            ) from e

        return RunningVM(
            machine,
            vm_id=spec.vm_id,
            jailer=self._jailer,
            veth_iface_name=spec.network_interfaces[0].cni.if_name,
            socket_path=spec.jailer.socket_path,
            shutdown_graceful_timeout_seconds=self._machine_config.shutdown_graceful_timeout_seconds,
            machine_config=self._machine_config,
        )

    async def _cleanup_failed_launch(self, machine: Machine) -> None:
        """Kill the process, detach the network and drop the jail; never raises."""
        vm_id = machine.vm_id
        logger.warning("Cleaning up failed launch", extra={"vm_id": vm_id})
        await cleanup_process(machine.process, "firecracker", vm_id)
        try:
            await machine.teardown_network()
        except Exception as e:
            logger.error(
                "CNI cleanup after failed launch failed",
                extra={"vm_id": vm_id, "error": str(e), "error_type": type(e).__name__},
            )
        await machine.close()
        self._machine_config.release()
        await cleanup_directory(jail.jail_dir(self._jailer), vm_id, description="jail directory")
