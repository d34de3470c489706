"""Detached stop: terminate a VM by id/PID without a live RunningVM handle.

Used when the VM was started by another server process (or before a
restart) and only its id, PID and architecture are known.

Sequence:
    1. parse the architecture; validate the jail identity
    2. no control socket        -> already stopped
    3. x86_64                   -> PUT /actions SendCtrlAltDel
       aarch64                  -> PUT /mmds {"ShutDown": 1}, wait for the PID
    4. remove the jail directory (absent = success)
    5. "VM with id: <id> has been stopped[ <exit description>]"

Concurrent duplicate stops for one id are safe: both see the socket gone or
both remove an already-removed directory.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import httpx

from open_fire import constants, jail
from open_fire._logging import get_logger
from open_fire.config import JailerConfig, StopConfig
from open_fire.exceptions import (
    FirecrackerAPIError,
    MetadataDeliveryError,
    OpenFireError,
    ProcessNotFoundError,
    StopProtocolError,
    UnsupportedArchError,
)
from open_fire.firecracker_client import FirecrackerClient, is_connection_refused
from open_fire.models import Arch
from open_fire.platform_utils import ExternalProcess, describe_exit
from open_fire.resource_cleanup import cleanup_directory
from open_fire.settings import Settings

logger = get_logger(__name__)

StopSequence = Callable[[StopConfig, JailerConfig, FirecrackerClient], Awaitable[str]]
"""Drives one architecture's shutdown; returns an exit description or ""."""


def parse_arch(value: str) -> Arch:
    """Raises UnsupportedArchError for anything but x86_64 / aarch64."""
    try:
        return Arch(value)
    except ValueError:
        raise UnsupportedArchError(value) from None


async def _wait_then_kill(pid: int, timeout: float, vm_id: str) -> str:
    """Bounded wait on this VM's Firecracker process, then SIGKILL.

    A PID that does not belong to the VM's Firecracker process is never
    signalled. Returns an exit description when the process was killed.
    """
    try:
        proc = ExternalProcess(pid)
    except ProcessNotFoundError:
        logger.info("VMM process already gone", extra={"vm_id": vm_id, "pid": pid})
        return ""
    if not await proc.is_firecracker_for(vm_id):
        logger.warning(
            "PID is not this VM's Firecracker process, not waiting on it",
            extra={"vm_id": vm_id, "pid": pid},
        )
        return ""
    try:
        await proc.wait(timeout)
    except TimeoutError:
        logger.warning(
            "VMM did not exit after shutdown action, killing",
            extra={"vm_id": vm_id, "pid": pid, "timeout": timeout},
        )
        await proc.kill()
        return f"Process state: killed after {timeout:g}s shutdown timeout"
    return ""


async def stop_x86_64(cfg: StopConfig, jailer: JailerConfig, api: FirecrackerClient) -> str:
    """ACPI shutdown via SendCtrlAltDel; a refused connection means already stopped."""
    try:
        await api.create_sync_action(constants.SEND_CTRL_ALT_DEL_ACTION)
    except FirecrackerAPIError as e:
        if not is_connection_refused(e):
            raise StopProtocolError(
                f"failed sending CtrlAltDel to the VMM, reason: {e}",
                context={"vm_id": cfg.vm_id},
            ) from e
        logger.info("VMM is already stopped", extra={"vm_id": cfg.vm_id})
        return ""

    if cfg.pid:
        logger.info("Waiting for VMM process to exit", extra={"vm_id": cfg.vm_id, "pid": cfg.pid})
        return await _wait_then_kill(cfg.pid, cfg.shutdown_timeout_seconds, cfg.vm_id)
    return ""


async def stop_aarch64(cfg: StopConfig, jailer: JailerConfig, api: FirecrackerClient) -> str:
    """No SendCtrlAltDel on aarch64: ask the guest through MMDS, then wait for the PID."""
    try:
        await api.put_mmds(constants.SHUTDOWN_METADATA)
    except FirecrackerAPIError as e:
        raise MetadataDeliveryError(f"cannot send mmds data to vm: {e}", context={"vm_id": cfg.vm_id}) from e

    proc = ExternalProcess(cfg.pid)
    returncode = await proc.wait()
    return f"Process state: {describe_exit(returncode)}"


_SEQUENCES: dict[Arch, StopSequence] = {
    Arch.X86_64: stop_x86_64,
    Arch.AARCH64: stop_aarch64,
}


def sequence_for(arch: Arch) -> StopSequence:
    match arch:
        case Arch.X86_64 | Arch.AARCH64:
            return _SEQUENCES[arch]
        case _:
            raise UnsupportedArchError(str(arch))


async def stop_vm(
    cfg: StopConfig,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Stop a VM by id/PID and remove its jail directory.

    The jail directory is removed whether or not the VM was still running.
    When the stop sequence itself fails it is removed as well, unless
    settings.preserve_jail_on_stop_failure is set.

    Raises:
        UnsupportedArchError: arch is not x86_64 or aarch64 (nothing is removed)
        SandboxValidationError: jail identity incomplete (nothing is removed)
        StopProtocolError, MetadataDeliveryError, ProcessNotFoundError, SandboxError
    """
    arch = parse_arch(cfg.arch)
    jailer = JailerConfig(
        uid=settings.jailer_uid,
        gid=settings.jailer_gid,
        vm_id=cfg.vm_id,
        firecracker_binary=settings.firecracker_binary,
        jailer_binary=settings.jailer_binary,
        chroot_base=cfg.chroot_base,
    )
    jail.validate(jailer)
    jail_dir = jail.jail_dir(jailer)
    logger.info("Stopping VM", extra={"vm_id": cfg.vm_id, "arch": arch.value, "jail": str(jail_dir)})

    exit_description = ""
    try:
        if jail.socket_exists(jailer):
            async with FirecrackerClient(jail.socket_path(jailer), vm_id=cfg.vm_id, transport=transport) as api:
                exit_description = await sequence_for(arch)(cfg, jailer, api)
        else:
            logger.info("VMM socket not found, VM already stopped", extra={"vm_id": cfg.vm_id})
    except OpenFireError as e:
        logger.error("Stop sequence failed", extra={"vm_id": cfg.vm_id, "error": e.message})
        if settings.preserve_jail_on_stop_failure:
            logger.warning(
                "Keeping jail directory after failed stop",
                extra={"vm_id": cfg.vm_id, "jail": str(jail_dir)},
            )
        else:
            await cleanup_directory(jail_dir, cfg.vm_id, description="jail directory")
        raise

    await cleanup_directory(jail_dir, cfg.vm_id, description="jail directory")

    result = constants.STOPPED_MESSAGE_TEMPLATE.format(vm_id=cfg.vm_id)
    if exit_description:
        result += " " + exit_description
    return result
