"""Named steps of the microVM boot pipeline.

Each handler is an async function taking the Machine being booted. The base
pipeline (see machine.default_handlers) runs them in this order:

    fcinit.SetupNetwork            CNI ADD in the VM's network namespace
    fcinit.SetupKernelArgs         append the guest ip= argument
    fcinit.StartVMM                spawn the jailer, wait for the API socket
    fcinit.CreateLogFiles          create FIFOs inside the chroot
    fcinit.BootstrapLogging        PUT /logger, /metrics
    fcinit.CreateMachine           PUT /machine-config
    fcinit.CreateBootSource        PUT /boot-source
    fcinit.AttachDrives            PUT /drives/{id}
    fcinit.CreateNetworkInterfaces PUT /network-interfaces/{id}
    fcinit.AddVsocks               PUT /vsock
    fcinit.ConfigMmds              PUT /mmds/config

Extension steps (file links, metadata) are placed relative to these names
through a PlacingStrategy.
"""

from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from open_fire._logging import get_logger
from open_fire.cni import create_netns
from open_fire.config import MachineConfig, MetadataConfig
from open_fire.exceptions import LaunchError
from open_fire.placement import Handler, HandlerPlacement, PlacingStrategy

if TYPE_CHECKING:
    from open_fire.machine import Machine

logger = get_logger(__name__)

SETUP_NETWORK = "fcinit.SetupNetwork"
SETUP_KERNEL_ARGS = "fcinit.SetupKernelArgs"
START_VMM = "fcinit.StartVMM"
CREATE_LOG_FILES = "fcinit.CreateLogFiles"
BOOTSTRAP_LOGGING = "fcinit.BootstrapLogging"
CREATE_MACHINE = "fcinit.CreateMachine"
CREATE_BOOT_SOURCE = "fcinit.CreateBootSource"
ATTACH_DRIVES = "fcinit.AttachDrives"
CREATE_NETWORK_INTERFACES = "fcinit.CreateNetworkInterfaces"
ADD_VSOCKS = "fcinit.AddVsocks"
CONFIG_MMDS = "fcinit.ConfigMmds"
LINK_FILES_TO_ROOTFS = "fcinit.LinkFilesToRootFS"
METADATA_EXTRACTOR = "fcinit.MetadataExtractor"


def link_into_chroot(machine: Machine, host_path: str | Path, name: str) -> str:
    """Hard-link host_path into the chroot root as name and hand it to the jailed uid/gid.

    Falls back to a copy when the chroot is on another filesystem. An existing
    target is reused only when it is the same file as host_path.

    Returns:
        The path as seen from inside the chroot ("/<name>")

    Raises:
        LaunchError: the target name is already taken by another file
    """
    source = Path(host_path)
    target = machine.spec.jailer.chroot_dir / name
    if target.exists():
        if not os.path.samefile(source, target):
            raise LaunchError(
                f"chroot path /{name} already holds a different file than {source}",
                context={"vm_id": machine.vm_id, "source": str(source), "target": str(target)},
            )
    else:
        try:
            os.link(source, target)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copy2(source, target)
    os.chown(target, machine.spec.jailer.uid, machine.spec.jailer.gid)
    return f"/{name}"


# ============================================================================
# Base pipeline
# ============================================================================


async def setup_network(machine: Machine) -> None:
    spec = machine.spec
    await create_netns(machine.netns_path)
    for nic in spec.network_interfaces:
        result = await machine.cni.add(nic.cni.network_name, spec.vm_id, machine.netns_path, nic.cni.if_name)
        machine.cni_results.append(result)
    logger.debug("Network attached", extra={"vm_id": spec.vm_id, "ip": machine.ip})


async def setup_kernel_args(machine: Machine) -> None:
    if machine.cni_results:
        machine.kernel_args = f"{machine.kernel_args} {machine.cni_results[0].ip_boot_param()}"


async def start_vmm(machine: Machine) -> None:
    await machine.start_vmm()


async def create_log_files(machine: Machine) -> None:
    await machine.create_fifos()


async def bootstrap_logging(machine: Machine) -> None:
    spec = machine.spec
    if spec.log_fifo:
        await machine.api.put_logger(machine.chroot_paths[spec.log_fifo], spec.log_level)
    if spec.metrics_fifo:
        await machine.api.put_metrics(machine.chroot_paths[spec.metrics_fifo])


async def create_machine(machine: Machine) -> None:
    await machine.api.put_machine_config(machine.spec.machine.to_api())


async def create_boot_source(machine: Machine) -> None:
    kernel = machine.chroot_paths.get(machine.spec.kernel_image_path, machine.spec.kernel_image_path)
    await machine.api.put_boot_source(kernel, machine.kernel_args)


async def attach_drives(machine: Machine) -> None:
    for drive in machine.spec.drives:
        await machine.api.put_drive(drive.to_api(machine.chroot_paths.get(drive.path_on_host)))


async def create_network_interfaces(machine: Machine) -> None:
    for index, nic in enumerate(machine.spec.network_interfaces):
        result = machine.cni_results[index]
        await machine.api.put_network_interface(
            str(index + 1),
            result.tap_name,
            guest_mac=result.vm_mac,
            rx_rate_limiter=nic.in_rate_limiter.to_api(),
            tx_rate_limiter=nic.out_rate_limiter.to_api(),
        )


async def add_vsocks(machine: Machine) -> None:
    for index, vsock in enumerate(machine.spec.vsock_devices):
        await machine.api.put_vsock(f"vsock{index}", vsock.cid, vsock.path)


async def config_mmds(machine: Machine) -> None:
    ifaces = [str(i + 1) for i, nic in enumerate(machine.spec.network_interfaces) if nic.allow_mmds]
    if ifaces:
        await machine.api.put_mmds_config(ifaces, machine.spec.mmds_version)


# ============================================================================
# Extension handlers
# ============================================================================


def drive_chroot_name(drive_id: str, host_path: str) -> str:
    """Chroot file name of a drive; the id prefix keeps same-named images apart."""
    return f"{drive_id}-{Path(host_path).name}"


def link_files_handler(kernel_image_name: str) -> Handler:
    """Link the kernel and every drive into the chroot before it is referenced."""

    async def link_files(machine: Machine) -> None:
        spec = machine.spec
        machine.chroot_paths[spec.kernel_image_path] = link_into_chroot(
            machine, spec.kernel_image_path, kernel_image_name
        )
        for drive in spec.drives:
            machine.chroot_paths[drive.path_on_host] = link_into_chroot(
                machine, drive.path_on_host, drive_chroot_name(drive.drive_id, drive.path_on_host)
            )
        logger.debug(
            "Files linked into chroot",
            extra={"vm_id": spec.vm_id, "kernel": kernel_image_name, "chroot": str(spec.jailer.chroot_dir)},
        )

    return Handler(LINK_FILES_TO_ROOTFS, link_files)


def metadata_extractor_handler(metadata: MetadataConfig) -> Handler:
    """Put the request metadata into MMDS before the boot source is configured."""

    async def extract_metadata(machine: Machine) -> None:
        await machine.set_metadata(metadata.serialize())

    return Handler(METADATA_EXTRACTOR, extract_metadata)


def metadata_placement(metadata: MetadataConfig) -> HandlerPlacement:
    return HandlerPlacement(metadata_extractor_handler(metadata), anchor=CREATE_BOOT_SOURCE)


def default_strategy(machine_config: MachineConfig) -> PlacingStrategy:
    """Jailer strategy: link boot artifacts into the chroot before the log files are created."""
    kernel_image_name = Path(machine_config.kernel_path).name
    return PlacingStrategy(lambda: HandlerPlacement(link_files_handler(kernel_image_name), anchor=CREATE_LOG_FILES))
