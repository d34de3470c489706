"""Constants for open-fire configuration and limits."""

import logging
from pathlib import Path
from typing import Final

# ============================================================================
# Machine defaults
# ============================================================================

DEFAULT_KERNEL_ARGS: Final[str] = (
    "noapic reboot=k panic=1 pci=off nomodules nosmt=force l1tf=full,force 8250.nr_uarts=0 quiet loglevel=1 rw"
)
"""Kernel command line used when the request does not override it."""

DEBUG_CONSOLE_KERNEL_ARG: Final[str] = "console=ttyS0"
"""Appended to the kernel command line when debug is enabled."""

MIN_VCPU_COUNT: Final[int] = 1
"""Minimum number of vCPUs for a microVM."""

MIN_MEMORY_MIB: Final[int] = 128
"""Minimum guest memory in MiB."""

FIRECRACKER_LOG_LEVELS: Final[tuple[str, ...]] = ("Error", "Warning", "Info", "Debug")
"""Log levels accepted by Firecracker's /logger endpoint (case-sensitive)."""

DEFAULT_SHUTDOWN_GRACEFUL_TIMEOUT_SECONDS: Final[int] = 30
"""Time a live VM gets to shut down cleanly before it is killed."""

DEFAULT_KILL_SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 10.0
"""Time a detached stop waits for the process to exit after the shutdown action."""

# ============================================================================
# Drives, vsock, network
# ============================================================================

RW_DEVICE_SUFFIX: Final[str] = ":rw"
RO_DEVICE_SUFFIX: Final[str] = ":ro"

ROOT_DRIVE_ID: Final[str] = "1"
"""Drive id reserved for the root device; additional drives start at 2."""

FIRST_ADDITIONAL_DRIVE_ID: Final[int] = 2

MAX_VSOCK_CID: Final[int] = 2**32 - 1

VETH_IFACE_PREFIX: Final[str] = "veth"
"""Prefix of generated CNI interface names."""

VETH_IFACE_SUFFIX_LENGTH: Final[int] = 11
"""Random suffix length; prefix + suffix = 15 chars, the Linux IFNAMSIZ limit."""

GUEST_IFACE_NAME: Final[str] = "eth0"
"""Interface name inside the guest, used for kernel ip= configuration."""

DEFAULT_NETNS_DIR: Final[Path] = Path("/var/run/netns")
"""Where named network namespaces are bound; one file per VM id."""

# ============================================================================
# FIFOs
# ============================================================================

FIFO_TEMP_DIR_PREFIX: Final[str] = "fcfifo"
LOG_FIFO_NAME: Final[str] = "fc_fifo"
METRICS_FIFO_NAME: Final[str] = "fc_metrics_fifo"

FIFO_LOG_FILE_MODE: Final[int] = 0o644
FIFO_COPY_CHUNK_SIZE: Final[int] = 64 * 1024

# ============================================================================
# Jailer
# ============================================================================

JAILER_ROOT_DIR_NAME: Final[str] = "root"
"""Directory under <chroot_base>/<exec>/<id> that becomes the chroot."""

FIRECRACKER_SOCKET_NAME: Final[str] = "firecracker.socket"
"""Control socket file, created in <chroot>/run/."""

JAILER_CGROUP_VERSION: Final[str] = "2"

MMDS_VERSION: Final[str] = "V2"

# ============================================================================
# Timeouts
# ============================================================================

SOCKET_WAIT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Time the jailed Firecracker gets to create and listen on its API socket."""

API_READY_TIMEOUT_SECONDS: Final[float] = 5.0
"""Time the API gets to answer its first request after the socket is up."""

API_REQUEST_TIMEOUT_SECONDS: Final[float] = 10.0
"""Per-request timeout on the Firecracker control socket."""

CNI_PLUGIN_TIMEOUT_SECONDS: Final[float] = 30.0
"""Upper bound for a single CNI plugin invocation."""

SOCKET_POLL_INTERVAL_SECONDS: Final[float] = 0.005
"""Interval between checks for the API socket."""

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period after SIGTERM before a failed launch's VMM is killed."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0

# ============================================================================
# VMM output
# ============================================================================

VMM_STDOUT_LOG_LEVEL: Final[int] = logging.DEBUG
VMM_STDERR_LOG_LEVEL: Final[int] = logging.WARNING

# ============================================================================
# Stop protocol
# ============================================================================

SEND_CTRL_ALT_DEL_ACTION: Final[str] = "SendCtrlAltDel"
INSTANCE_START_ACTION: Final[str] = "InstanceStart"

SHUTDOWN_METADATA: Final[dict[str, int]] = {"ShutDown": 1}
"""MMDS document the aarch64 guest agent polls for to power itself off."""

STOPPED_MESSAGE_TEMPLATE: Final[str] = "VM with id: {vm_id} has been stopped"
