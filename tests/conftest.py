"""Shared pytest fixtures for open-fire tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from open_fire.config import JailerConfig, MachineConfig
from open_fire.settings import Settings

# ============================================================================
# Host layout
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every host directory under tmp_path."""
    return Settings(
        chroot_base=tmp_path / "jailer",
        netns_dir=tmp_path / "netns",
        cni_bin_dir=tmp_path / "cni" / "bin",
        cni_conf_dir=tmp_path / "cni" / "conf.d",
        cni_cache_dir=tmp_path / "cni" / "cache",
        firecracker_binary=Path("/usr/bin/firecracker"),
        jailer_binary=Path("/usr/bin/jailer"),
        jailer_uid=123,
        jailer_gid=100,
    )


@pytest.fixture
def jailer(settings: Settings) -> JailerConfig:
    return JailerConfig.from_settings(settings, vm_id="vm-test")


@pytest.fixture
def kernel_image(tmp_path: Path) -> Path:
    path = tmp_path / "images" / "vmlinux"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"kernel")
    return path


@pytest.fixture
def rootfs_image(tmp_path: Path) -> Path:
    path = tmp_path / "images" / "rootfs.ext4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"rootfs")
    return path


@pytest.fixture
def data_image(tmp_path: Path) -> Path:
    path = tmp_path / "images" / "data.img"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"data")
    return path


@pytest.fixture
def machine_config(kernel_image: Path, rootfs_image: Path) -> Iterator[MachineConfig]:
    """Minimal bootable machine configuration; its resources are released after the test."""
    cfg = MachineConfig(
        kernel_path=str(kernel_image),
        root_drive_path=str(rootfs_image),
        cni_network_name="testnet",
        vcpu_count=2,
        mem_size_mib=256,
    )
    yield cfg
    cfg.release()
