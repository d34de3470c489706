"""Jail path derivation for the Firecracker jailer.

The jailer lays a VM out as::

    <chroot_base>/<basename(exec_file)>/<vm_id>/       <- jail_dir
                                             root/     <- chroot_dir
                                                  run/firecracker.socket

All functions except socket_exists() are pure and do no I/O.
"""

from __future__ import annotations

import os
from pathlib import Path

from open_fire import constants
from open_fire.config import JailerConfig
from open_fire.exceptions import SandboxError, SandboxValidationError


def validate(cfg: JailerConfig) -> None:
    """Check the sandbox identity fields.

    Raises:
        SandboxValidationError: naming the first unset field among uid, gid, vm_id
    """
    if cfg.uid is None:
        raise SandboxValidationError("jailer uid must be set", field="uid")
    if cfg.gid is None:
        raise SandboxValidationError("jailer gid must be set", field="gid")
    if not cfg.vm_id:
        raise SandboxValidationError("vm id must be set", field="vm_id")


def jail_dir(cfg: JailerConfig) -> Path:
    """Per-VM jail directory, parent of the chroot."""
    return cfg.chroot_base / os.path.basename(cfg.firecracker_binary) / cfg.vm_id


def chroot_dir(cfg: JailerConfig) -> Path:
    """Directory the jailer chroots Firecracker into."""
    return jail_dir(cfg) / constants.JAILER_ROOT_DIR_NAME


def socket_path(cfg: JailerConfig) -> Path:
    """Host path of the Firecracker control socket."""
    return chroot_dir(cfg) / "run" / constants.FIRECRACKER_SOCKET_NAME


def socket_exists(cfg: JailerConfig) -> bool:
    """Whether the control socket is present.

    Raises:
        SandboxError: stat failed for a reason other than the path being absent
    """
    path = socket_path(cfg)
    try:
        path.stat()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise SandboxError(
            f"failed checking if the VMM socket file exists, reason: {e}",
            context={"vm_id": cfg.vm_id, "socket_path": str(path)},
        ) from e
    return True

