"""Launch specification builder.

Turns a validated MachineConfig and JailerConfig into a LaunchSpec: the
complete, internally consistent description of one jailed Firecracker
microVM (drives, network interface, vsock devices, log/metrics FIFOs,
jailer parameters and machine sizing).

build_launch_spec() performs only the I/O needed to validate host paths and
to synthesize FIFO locations. Every resource it creates is registered on
the MachineConfig's ResourceGuard and released by MachineConfig.release().

Drive specs:
    "/data.img:rw"  -> read-write drive
    "/data.img:ro"  -> read-only drive

Vsock specs:
    "/tmp/v.sock:3" -> uds path + guest CID
"""

from __future__ import annotations

import os
import secrets
import shutil
import string
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

from open_fire import constants, jail
from open_fire.config import JailerConfig, MachineConfig
from open_fire.exceptions import (
    CIDParseError,
    ConflictError,
    DriveNotFoundError,
    FifoLogFileError,
    MissingPathError,
    MissingSuffixError,
    NetworkConfigError,
    VsockFormatError,
)

_IFACE_ALPHABET = string.ascii_letters


# ============================================================================
# Spec types
# ============================================================================


@dataclass(frozen=True, slots=True)
class TokenBucket:
    """Firecracker token bucket; size 0 disables the limit."""

    size: int = 0
    refill_time: int = 0

    def to_api(self) -> dict[str, int]:
        return {"size": self.size, "refill_time": self.refill_time}


@dataclass(frozen=True, slots=True)
class RateLimiter:
    bandwidth: TokenBucket = field(default_factory=TokenBucket)
    ops: TokenBucket = field(default_factory=TokenBucket)

    def to_api(self) -> dict[str, Any]:
        return {"bandwidth": self.bandwidth.to_api(), "ops": self.ops.to_api()}


@dataclass(frozen=True, slots=True)
class Drive:
    drive_id: str
    path_on_host: str
    is_read_only: bool
    is_root_device: bool = False
    partuuid: str = ""

    def to_api(self, path_on_host: str | None = None) -> dict[str, Any]:
        """Body for ``PUT /drives/{id}``; path_on_host overrides the host path (chroot-relative)."""
        body: dict[str, Any] = {
            "drive_id": self.drive_id,
            "path_on_host": path_on_host or self.path_on_host,
            "is_root_device": self.is_root_device,
            "is_read_only": self.is_read_only,
        }
        if self.partuuid:
            body["partuuid"] = self.partuuid
        return body


@dataclass(frozen=True, slots=True)
class CNIAttachment:
    """CNI network the interface is attached through."""

    network_name: str
    if_name: str
    args: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True, slots=True)
class NetworkInterface:
    cni: CNIAttachment
    allow_mmds: bool = True
    in_rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    out_rate_limiter: RateLimiter = field(default_factory=RateLimiter)


@dataclass(frozen=True, slots=True)
class VsockDevice:
    path: str
    cid: int


@dataclass(frozen=True, slots=True)
class MachineSizing:
    vcpu_count: int
    mem_size_mib: int
    cpu_template: str = ""
    smt: bool = False

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "vcpu_count": self.vcpu_count,
            "mem_size_mib": self.mem_size_mib,
            "smt": self.smt,
        }
        if self.cpu_template:
            body["cpu_template"] = self.cpu_template
        return body


@dataclass(frozen=True, slots=True)
class JailerParams:
    """Arguments handed to the jailer binary."""

    uid: int
    gid: int
    vm_id: str
    exec_file: Path
    jailer_binary: Path
    chroot_base: Path
    chroot_dir: Path
    socket_path: Path
    numa_node: int | None = None
    netns: Path | None = None
    daemonize: bool = False
    cgroup_version: str = constants.JAILER_CGROUP_VERSION
    # True inherits the server's stdio; otherwise the launcher pipes and drains it.
    inherit_stdio: bool = False


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """Complete description of one microVM, ready to be started."""

    vm_id: str
    kernel_image_path: str
    kernel_args: str
    drives: tuple[Drive, ...]
    network_interfaces: tuple[NetworkInterface, ...]
    vsock_devices: tuple[VsockDevice, ...]
    machine: MachineSizing
    jailer: JailerParams
    log_fifo: str = ""
    metrics_fifo: str = ""
    log_level: str = "Info"
    # Sink receiving the content piped out of log_fifo (combined log file target).
    fifo_log_writer: BinaryIO | None = None
    mmds_version: str = constants.MMDS_VERSION
    netns: Path | None = None

    @property
    def root_drive(self) -> Drive:
        return next(d for d in self.drives if d.is_root_device)


# ============================================================================
# Parsers
# ============================================================================


def parse_device(entry: str) -> tuple[str, bool]:
    """Split a lenient ``path[:rw|:ro]`` entry into (path, read_only).

    Used for the root drive, where a missing suffix means read-write.
    """
    if entry.endswith(constants.RO_DEVICE_SUFFIX):
        return entry.removesuffix(constants.RO_DEVICE_SUFFIX), True
    return entry.removesuffix(constants.RW_DEVICE_SUFFIX), False


def parse_block_devices(entries: Iterable[str]) -> list[Drive]:
    """Parse additional drive specs into drives with ids "2", "3", ... in input order.

    Raises:
        MissingSuffixError: entry lacks both ``:rw`` and ``:ro``
        MissingPathError: empty path before the suffix
        DriveNotFoundError: host path does not exist
    """
    devices: list[Drive] = []
    for i, entry in enumerate(entries):
        if entry.endswith(constants.RW_DEVICE_SUFFIX):
            path, read_only = entry.removesuffix(constants.RW_DEVICE_SUFFIX), False
        elif entry.endswith(constants.RO_DEVICE_SUFFIX):
            path, read_only = entry.removesuffix(constants.RO_DEVICE_SUFFIX), True
        else:
            raise MissingSuffixError(
                "invalid drive specification. Must have :rw or :ro suffix",
                context={"drive": entry},
            )

        if not path:
            raise MissingPathError("invalid drive specification. Must have path", context={"drive": entry})

        if not os.path.exists(path):
            raise DriveNotFoundError(f"drive not found: {path}", context={"drive": entry, "path": path})

        devices.append(
            Drive(
                drive_id=str(i + constants.FIRST_ADDITIONAL_DRIVE_ID),
                path_on_host=path,
                is_read_only=read_only,
            )
        )
    return devices


def parse_vsocks(entries: Iterable[str]) -> list[VsockDevice]:
    """Parse ``path:CID`` vsock specs.

    Raises:
        VsockFormatError: not exactly two non-empty colon-separated fields
        CIDParseError: CID is not a base-10 unsigned 32-bit integer
    """
    devices: list[VsockDevice] = []
    for entry in entries:
        fields = entry.split(":")
        if len(fields) != 2 or not fields[0] or not fields[1]:
            raise VsockFormatError("unable to parse vsock devices", context={"vsock": entry})

        path, raw_cid = fields
        if not raw_cid.isascii() or not raw_cid.isdigit() or int(raw_cid) > constants.MAX_VSOCK_CID:
            raise CIDParseError("unable to parse vsock CID as a number", context={"vsock": entry})

        devices.append(VsockDevice(path=path, cid=int(raw_cid)))
    return devices


def generate_iface_name() -> str:
    """Unique host interface name: fixed prefix plus random letters, 15 chars total."""
    suffix = "".join(secrets.choice(_IFACE_ALPHABET) for _ in range(constants.VETH_IFACE_SUFFIX_LENGTH))
    return constants.VETH_IFACE_PREFIX + suffix


# ============================================================================
# Builder
# ============================================================================


@dataclass(frozen=True, slots=True)
class FifoPlan:
    """Resolved FIFO locations and optional log sink."""

    log_fifo: str
    metrics_fifo: str
    log_writer: BinaryIO | None = None


def _open_fifo_log_file(path: str) -> BinaryIO:
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, constants.FIFO_LOG_FILE_MODE)
    return os.fdopen(fd, "ab")


def handle_fifos(machine: MachineConfig) -> FifoPlan:
    """Work out which FIFOs to synthesize and whether to open the log sink.

    Raises:
        ConflictError: fifo_log_file and log_fifo are both set
        FifoLogFileError: fifo_log_file could not be opened
    """
    log_fifo = machine.log_fifo
    metrics_fifo = machine.metrics_fifo
    generate_log = False
    generate_metrics = False
    writer: BinaryIO | None = None

    if machine.fifo_log_file:
        if log_fifo:
            raise ConflictError(
                "vmm-log-fifo and firecracker-log cannot be used together",
                context={"log_fifo": log_fifo, "fifo_log_file": machine.fifo_log_file},
            )
        generate_log = True
        generate_metrics = not metrics_fifo
        try:
            writer = _open_fifo_log_file(machine.fifo_log_file)
        except OSError as e:
            raise FifoLogFileError(
                f"failed to create fifo log file: {e}",
                context={"fifo_log_file": machine.fifo_log_file},
            ) from e
        machine.resources.add(f"fifo log file {machine.fifo_log_file}", writer.close)
    elif log_fifo or metrics_fifo:
        generate_log = not log_fifo
        generate_metrics = not metrics_fifo

    if generate_log or generate_metrics:
        fifo_dir = tempfile.mkdtemp(prefix=constants.FIFO_TEMP_DIR_PREFIX)
        machine.resources.add(f"fifo directory {fifo_dir}", lambda: shutil.rmtree(fifo_dir, ignore_errors=True))
        if generate_log:
            log_fifo = os.path.join(fifo_dir, constants.LOG_FIFO_NAME)
        if generate_metrics:
            metrics_fifo = os.path.join(fifo_dir, constants.METRICS_FIFO_NAME)

    return FifoPlan(log_fifo=log_fifo, metrics_fifo=metrics_fifo, log_writer=writer)


def _network_interfaces(machine: MachineConfig) -> tuple[NetworkInterface, ...]:
    if not machine.cni_network_name:
        raise NetworkConfigError("network name required")
    nic = NetworkInterface(
        cni=CNIAttachment(network_name=machine.cni_network_name, if_name=generate_iface_name()),
        allow_mmds=True,
    )
    return (nic,)


def _drives(machine: MachineConfig) -> tuple[Drive, ...]:
    additional = parse_block_devices(machine.additional_drives)
    root_path, root_read_only = parse_device(machine.root_drive_path)
    root = Drive(
        drive_id=constants.ROOT_DRIVE_ID,
        path_on_host=root_path,
        is_read_only=root_read_only,
        is_root_device=True,
        partuuid=machine.root_partuuid,
    )
    return (root, *additional)


def _jailer_params(jailer: JailerConfig, machine: MachineConfig) -> JailerParams:
    return JailerParams(
        uid=jailer.uid if jailer.uid is not None else 0,
        gid=jailer.gid if jailer.gid is not None else 0,
        vm_id=jailer.vm_id,
        exec_file=jailer.firecracker_binary,
        jailer_binary=jailer.jailer_binary,
        chroot_base=jailer.chroot_base,
        chroot_dir=jail.chroot_dir(jailer),
        socket_path=jail.socket_path(jailer),
        numa_node=jailer.numa_node,
        netns=jailer.netns,
        daemonize=jailer.daemonize or machine.daemonize,
        inherit_stdio=machine.debug,
    )


def build_launch_spec(machine: MachineConfig, jailer: JailerConfig) -> LaunchSpec:
    """Translate machine + jailer configuration into a LaunchSpec.

    On failure, resources registered so far stay on machine.resources; the
    caller releases them through machine.release().

    Raises:
        ConfigValidationError: network, drive, vsock or FIFO options are invalid
        ResourceNotFoundError: an additional drive does not exist on the host
        FifoLogFileError: the combined log file target could not be opened
    """
    kernel_args = machine.kernel_args
    if machine.debug:
        kernel_args = f"{kernel_args} {constants.DEBUG_CONSOLE_KERNEL_ARG}"

    nics = _network_interfaces(machine)
    drives = _drives(machine)
    vsocks = parse_vsocks(machine.vsock_devices)
    fifos = handle_fifos(machine)

    return LaunchSpec(
        vm_id=jailer.vm_id,
        kernel_image_path=machine.kernel_path,
        kernel_args=kernel_args,
        drives=drives,
        network_interfaces=nics,
        vsock_devices=tuple(vsocks),
        machine=MachineSizing(
            vcpu_count=machine.vcpu_count,
            mem_size_mib=machine.mem_size_mib,
            cpu_template=machine.cpu_template,
            smt=machine.smt,
        ),
        jailer=_jailer_params(jailer, machine),
        log_fifo=fifos.log_fifo,
        metrics_fifo=fifos.metrics_fifo,
        log_level=machine.log_level,
        fifo_log_writer=fifos.log_writer,
        netns=jailer.netns,
    )
