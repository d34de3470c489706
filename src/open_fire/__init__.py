"""open-fire: control plane for jailed Firecracker microVMs.

Boots microVMs through the Firecracker jailer, attaches them to a CNI network,
supervises them while they run and tears everything down when they stop.

Quick Start (library):
    ```python
    from open_fire import CreateVMRequest, Settings, VmManager

    async with VmManager(Settings()) as manager:
        vm = await manager.start_vm(
            CreateVMRequest(
                kernel_path="/images/vmlinux",
                root_drive_path="/images/rootfs.ext4",
                cni_network_name="fcnet",
            )
        )
        print(vm.vm_id, vm.pid, vm.ip)
        outcome = await vm.stop()  # StopOutcome.GRACEFULLY or FORCEFULLY
    ```

Detached stop (VM started by another process):
    ```python
    from open_fire import StopVMRequest

    message = await manager.stop_vm(StopVMRequest(vmm_id=vm_id, pid=pid, arch="x86_64"))
    ```

HTTP server:
    open-fire serve --port 8080

Requirements:
    - Linux with KVM, firecracker and jailer binaries
    - CNI plugins (ptp, host-local, tc-redirect-tap)
    - Python 3.12+
"""

from importlib.metadata import PackageNotFoundError, version

from open_fire.config import CNIConfig, JailerConfig, MachineConfig, StopConfig
from open_fire.exceptions import (
    AnchorNotFoundError,
    CIDParseError,
    CNIError,
    ConfigValidationError,
    ConflictError,
    DriveNotFoundError,
    FifoLogFileError,
    FirecrackerAPIError,
    LaunchError,
    MetadataDeliveryError,
    MissingPathError,
    MissingSuffixError,
    NetworkConfigError,
    OpenFireError,
    ProcessNotFoundError,
    ResourceNotFoundError,
    SandboxError,
    SandboxValidationError,
    StopError,
    StopProtocolError,
    UnsupportedArchError,
    VsockFormatError,
)
from open_fire.models import Arch, CreateVMRequest, CreateVMResponse, StopOutcome, StopVMRequest
from open_fire.placement import Handler, HandlerList, HandlerPlacement, PlacingStrategy
from open_fire.running_vm import RunningVM
from open_fire.settings import Settings
from open_fire.vm_manager import VmManager

try:
    __version__ = version("open-fire")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"

__all__ = [
    "AnchorNotFoundError",
    "Arch",
    "CIDParseError",
    "CNIConfig",
    "CNIError",
    "ConfigValidationError",
    "ConflictError",
    "CreateVMRequest",
    "CreateVMResponse",
    "DriveNotFoundError",
    "FifoLogFileError",
    "FirecrackerAPIError",
    "Handler",
    "HandlerList",
    "HandlerPlacement",
    "JailerConfig",
    "LaunchError",
    "MachineConfig",
    "MetadataDeliveryError",
    "MissingPathError",
    "MissingSuffixError",
    "NetworkConfigError",
    "OpenFireError",
    "PlacingStrategy",
    "ProcessNotFoundError",
    "ResourceNotFoundError",
    "RunningVM",
    "SandboxError",
    "SandboxValidationError",
    "Settings",
    "StopConfig",
    "StopError",
    "StopOutcome",
    "StopProtocolError",
    "StopVMRequest",
    "UnsupportedArchError",
    "VmManager",
    "VsockFormatError",
    "__version__",
]
