"""Exception hierarchy for open-fire.

All exceptions inherit from OpenFireError.

Hierarchy:
    OpenFireError (base)
    ├── ConfigValidationError (user-fixable, HTTP 422)
    │   ├── NetworkConfigError       ← missing CNI network name
    │   ├── MissingSuffixError       ← drive spec without :rw / :ro
    │   ├── MissingPathError         ← drive spec with empty path
    │   ├── VsockFormatError         ← vsock spec not PATH:CID
    │   ├── CIDParseError            ← CID not an unsigned 32-bit integer
    │   ├── ConflictError            ← log file target + raw log FIFO
    │   └── SandboxValidationError   ← jailer uid/gid/id unset
    ├── ResourceNotFoundError
    │   └── DriveNotFoundError       ← drive host path absent
    ├── FifoLogFileError             ← log sink could not be opened
    ├── AnchorNotFoundError          ← handler placement anchor absent
    ├── LaunchError                  ← jailer/firecracker did not come up
    ├── SandboxError                 ← unexpected failure inspecting the jail
    ├── FirecrackerAPIError          ← control socket call failed
    ├── CNIError                     ← CNI plugin ADD/DEL failed
    └── StopError
        ├── StopProtocolError        ← shutdown action failed
        ├── UnsupportedArchError     ← arch not x86_64 / aarch64
        ├── ProcessNotFoundError     ← PID cannot be resolved
        └── MetadataDeliveryError    ← MMDS shutdown document rejected
"""

from __future__ import annotations

from typing import Any


class OpenFireError(Exception):
    """Base exception for all open-fire errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Configuration errors (caller can fix the request)
# =============================================================================


class ConfigValidationError(OpenFireError):
    """Invalid machine, jailer or stop configuration.

    Raised before any process is launched or any resource is allocated.
    """


class NetworkConfigError(ConfigValidationError):
    """CNI network configuration is missing or invalid."""


class MissingSuffixError(ConfigValidationError):
    """Drive specification has neither a ``:rw`` nor a ``:ro`` suffix."""


class MissingPathError(ConfigValidationError):
    """Drive specification has an empty path before its suffix."""


class VsockFormatError(ConfigValidationError):
    """Vsock specification is not exactly ``PATH:CID``."""


class CIDParseError(ConfigValidationError):
    """Vsock CID is not a valid unsigned 32-bit integer."""


class ConflictError(ConfigValidationError):
    """Mutually exclusive options were given together.

    The combined log file target pipes the log FIFO content into a file, so it
    cannot be used with an explicit raw log FIFO path.
    """


class SandboxValidationError(ConfigValidationError):
    """Jailer sandbox identity is incomplete.

    Attributes:
        field: Name of the first required field found unset
    """

    def __init__(self, message: str, field: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["field"] = field
        super().__init__(message, ctx)
        self.field = field


# =============================================================================
# Host resources
# =============================================================================


class ResourceNotFoundError(OpenFireError):
    """A referenced host file (kernel, rootfs, drive) does not exist."""


class DriveNotFoundError(ResourceNotFoundError):
    """Additional drive path does not exist on the host."""


class FifoLogFileError(OpenFireError):
    """The file receiving piped Firecracker logs could not be opened."""


# =============================================================================
# Launch pipeline
# =============================================================================


class AnchorNotFoundError(OpenFireError):
    """A handler placement references a step absent from the base pipeline.

    Attributes:
        anchor: The missing handler name
    """

    def __init__(self, anchor: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["anchor"] = anchor
        super().__init__(f"anchor handler not found: {anchor}", ctx)
        self.anchor = anchor


class LaunchError(OpenFireError):
    """The jailed Firecracker process failed to start or become reachable.

    Partially started resources are torn down before this is raised.
    """


class SandboxError(OpenFireError):
    """Unexpected failure while inspecting the jail (e.g. stat on the socket)."""


class FirecrackerAPIError(OpenFireError):
    """A call on the Firecracker control socket failed.

    Attributes:
        status_code: HTTP status returned by Firecracker (None on transport failure)
        fault_message: ``fault_message`` from the Firecracker error body, if any
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        fault_message: str = "",
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.fault_message = fault_message


class CNIError(OpenFireError):
    """A CNI plugin invocation failed or returned an error result."""


# =============================================================================
# Stop protocol
# =============================================================================


class StopError(OpenFireError):
    """Base for failures of the detached stop sequence."""


class StopProtocolError(StopError):
    """The shutdown action could not be delivered over the control socket."""


class UnsupportedArchError(StopError):
    """Target architecture has no stop sequence.

    Attributes:
        arch: The rejected architecture string
    """

    def __init__(self, arch: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["arch"] = arch
        super().__init__(f"arch not recognized: {arch}, please use x86_64 or aarch64", ctx)
        self.arch = arch


class ProcessNotFoundError(StopError):
    """The Firecracker process could not be resolved from its PID."""


class MetadataDeliveryError(StopError):
    """The shutdown document could not be delivered through MMDS."""
