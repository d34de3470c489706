"""Data models for open-fire: HTTP request/response documents and shared enums."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Arch(str, Enum):
    """Host architectures with a known stop sequence."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"


class StopOutcome(str, Enum):
    """How a running VM ended up stopped."""

    GRACEFULLY = "gracefully"
    FORCEFULLY = "forcefully"


class MetadataRequest(BaseModel):
    """Opaque metadata delivered to the guest through MMDS."""

    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(default="", alias="Data", description="Data to pass to the VM")


class CreateVMRequest(BaseModel):
    """Body of ``POST /create``."""

    model_config = ConfigDict(populate_by_name=True)

    kernel_path: str = Field(default="", alias="kernelPath")
    root_drive_path: str = Field(default="", alias="rootDrivePath")
    cni_network_name: str = Field(default="", alias="cniNetworkName")
    additional_drives: str = Field(default="", alias="additionalDrives")
    metadata: MetadataRequest = Field(default_factory=MetadataRequest)
    debug: bool = False
    vcpu_count: int = Field(default=0, alias="vCpuCount")
    mem_size_mib: int = Field(default=0, alias="memSizeMib")
    enable_smt: bool = Field(default=False, alias="enableSmt")
    jailer_chroot_base: str = Field(default="", alias="jailerChrootBase")


class StopVMRequest(BaseModel):
    """Body of ``POST /stop``."""

    model_config = ConfigDict(populate_by_name=True)

    vmm_id: str = Field(default="", alias="vmmId")
    pid: int = 0
    arch: str = ""
    jailer_chroot_base: str = Field(default="", alias="jailerChrootBase")


class CreateVMResponse(BaseModel):
    """Body returned by a successful ``POST /create``."""

    model_config = ConfigDict(populate_by_name=True)

    ip: str
    pid: int
    vm_id: str = Field(alias="vmId")


class ErrorResponse(BaseModel):
    """Body returned with every 4xx/5xx response."""

    error: str
