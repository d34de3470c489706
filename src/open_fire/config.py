"""Per-request configuration for open-fire.

Each create or stop request is turned into explicit configuration values that
are passed by parameter through the launch pipeline; there is no shared
mutable configuration.

- MachineConfig: what to boot (kernel, drives, sizing, FIFOs, metadata)
- JailerConfig: where and as whom to boot it (uid/gid, chroot, vm id)
- CNIConfig: how to attach the network
- StopConfig: what to stop when no live handle is held

Example:
    ```python
    settings = Settings()
    machine = MachineConfig.from_request(create_request, settings)
    jailer = JailerConfig.from_settings(settings, chroot_base=create_request.jailer_chroot_base)
    ```
"""

from __future__ import annotations

import ipaddress
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from open_fire import constants
from open_fire.exceptions import ConfigValidationError
from open_fire.models import CreateVMRequest, StopVMRequest
from open_fire.resource_guard import ResourceGuard
from open_fire.settings import Settings


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        message = str(item["msg"]).removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class MetadataConfig(BaseModel):
    """Metadata document placed in MMDS before boot."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    data: str = Field(default="", alias="Data", description="Data to pass to the VM")

    def serialize(self) -> dict[str, Any]:
        """Return the JSON object stored in MMDS (round-tripped to plain JSON types)."""
        return json.loads(self.model_dump_json(by_alias=True))


class MachineConfig(BaseModel):
    """What to boot: kernel, drives, sizing, FIFOs and metadata.

    Resources synthesized while turning this configuration into a launch spec
    (temporary FIFO directories, the opened log file) are registered on the
    config's ResourceGuard and released once via release().
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    cni_network_name: str = ""
    vcpu_count: int = Field(default=1, ge=constants.MIN_VCPU_COUNT)
    mem_size_mib: int = Field(default=constants.MIN_MEMORY_MIB, ge=constants.MIN_MEMORY_MIB)
    cpu_template: str = ""
    smt: bool = False
    ip_address: str = ""
    kernel_path: str
    kernel_args: str = constants.DEFAULT_KERNEL_ARGS
    root_drive_path: str
    root_partuuid: str = ""
    additional_drives: tuple[str, ...] = ()
    vsock_devices: tuple[str, ...] = ()
    log_fifo: str = ""
    fifo_log_file: str = ""
    metrics_fifo: str = ""
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    debug: bool = False
    log_level: str = "Info"
    shutdown_graceful_timeout_seconds: int = Field(
        default=constants.DEFAULT_SHUTDOWN_GRACEFUL_TIMEOUT_SECONDS,
        ge=0,
    )
    log_http_calls: bool = False
    daemonize: bool = False

    _resources: ResourceGuard = PrivateAttr(default_factory=lambda: ResourceGuard("machine-config"))

    @field_validator("kernel_path")
    @classmethod
    def _kernel_path_required(cls, value: str) -> str:
        if not value:
            raise ValueError("kernel path cannot be empty")
        return value

    @field_validator("root_drive_path")
    @classmethod
    def _root_drive_path_required(cls, value: str) -> str:
        if not value:
            raise ValueError("rootfs path cannot be empty")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        if value not in constants.FIRECRACKER_LOG_LEVELS:
            raise ValueError("the log level is invalid")
        return value

    @field_validator("ip_address")
    @classmethod
    def _valid_ip(cls, value: str) -> str:
        if value:
            try:
                ipaddress.ip_address(value)
            except ValueError:
                raise ValueError("value of ip address is not an IP address") from None
        return value

    @classmethod
    def from_request(cls, request: CreateVMRequest, settings: Settings) -> MachineConfig:
        """Build a validated machine configuration from a create request.

        Raises:
            ConfigValidationError: A field is missing or out of range
        """
        drives = (request.additional_drives,) if request.additional_drives else ()
        try:
            return cls(
                cni_network_name=request.cni_network_name,
                vcpu_count=request.vcpu_count,
                mem_size_mib=request.mem_size_mib,
                smt=request.enable_smt,
                kernel_path=request.kernel_path,
                root_drive_path=request.root_drive_path,
                additional_drives=drives,
                metadata=MetadataConfig(data=request.metadata.data),
                debug=request.debug,
                log_level="Error" if settings.is_production else "Info",
                shutdown_graceful_timeout_seconds=settings.shutdown_graceful_timeout_seconds,
                log_http_calls=settings.log_http_calls,
            )
        except ValidationError as e:
            raise ConfigValidationError(_format_validation_error(e)) from None

    @property
    def resources(self) -> ResourceGuard:
        return self._resources

    def release(self) -> None:
        """Release every resource registered while building the launch spec."""
        self._resources.release()


class JailerConfig(BaseModel):
    """Jailer sandbox identity and locations for one VM."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: int | None = None
    gid: int | None = None
    numa_node: int | None = None
    vm_id: str = ""
    firecracker_binary: Path = Path("/usr/bin/firecracker")
    jailer_binary: Path = Path("/usr/bin/jailer")
    chroot_base: Path = Path("/srv/jailer")
    netns: Path | None = None
    daemonize: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        chroot_base: str | Path = "",
        vm_id: str | None = None,
    ) -> JailerConfig:
        """Jailer config for a new VM; a fresh vm id is generated when none is given."""
        vm_id = uuid4().hex if vm_id is None else vm_id
        return cls(
            uid=settings.jailer_uid,
            gid=settings.jailer_gid,
            numa_node=settings.numa_node,
            vm_id=vm_id,
            firecracker_binary=settings.firecracker_binary,
            jailer_binary=settings.jailer_binary,
            chroot_base=Path(chroot_base) if chroot_base else settings.chroot_base,
            netns=settings.netns_dir / vm_id if vm_id else None,
        )


class CNIConfig(BaseModel):
    """Locations used by CNI plugins."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bin_dir: Path = Path("/opt/cni/bin")
    conf_dir: Path = Path("/etc/cni/conf.d")
    cache_dir: Path = Path("/var/lib/cni")

    @classmethod
    def from_settings(cls, settings: Settings) -> CNIConfig:
        return cls(bin_dir=settings.cni_bin_dir, conf_dir=settings.cni_conf_dir, cache_dir=settings.cni_cache_dir)


class StopConfig(BaseModel):
    """Detached stop request: everything needed to stop a VM without a live handle."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    vm_id: str
    pid: int = Field(default=0, ge=0)
    arch: str
    chroot_base: Path = Path("/srv/jailer")
    shutdown_timeout_seconds: float = Field(default=constants.DEFAULT_KILL_SHUTDOWN_TIMEOUT_SECONDS, ge=0)

    @field_validator("vm_id")
    @classmethod
    def _vm_id_required(cls, value: str) -> str:
        if not value:
            raise ValueError("vmm id can't be empty")
        return value

    @field_validator("arch")
    @classmethod
    def _arch_required(cls, value: str) -> str:
        if not value:
            raise ValueError("arch can't be empty, values: aarch64, x86_64")
        return value

    @classmethod
    def from_request(cls, request: StopVMRequest, settings: Settings) -> StopConfig:
        """Build a stop configuration from a stop request.

        Raises:
            ConfigValidationError: vm id or arch missing
        """
        try:
            return cls(
                vm_id=request.vmm_id,
                pid=request.pid,
                arch=request.arch,
                chroot_base=Path(request.jailer_chroot_base) if request.jailer_chroot_base else settings.chroot_base,
                shutdown_timeout_seconds=settings.kill_shutdown_timeout_seconds,
            )
        except ValidationError as e:
            raise ConfigValidationError(_format_validation_error(e)) from None
