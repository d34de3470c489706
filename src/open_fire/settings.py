"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from open_fire import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with OPEN_FIRE_ prefix.
    Example: OPEN_FIRE_CHROOT_BASE=/srv/jailer
    """

    model_config = SettingsConfigDict(
        env_prefix="OPEN_FIRE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    # HTTP server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = Field(default=8080, ge=1, le=65535)

    # Binaries
    firecracker_binary: Path = Path("/usr/bin/firecracker")
    jailer_binary: Path = Path("/usr/bin/jailer")

    # Jailer sandbox
    chroot_base: Path = Path("/srv/jailer")
    jailer_uid: int = 123
    jailer_gid: int = 100
    numa_node: int | None = 0
    netns_dir: Path = Path("/var/run/netns")

    # CNI
    cni_bin_dir: Path = Path("/opt/cni/bin")
    cni_conf_dir: Path = Path("/etc/cni/conf.d")
    cni_cache_dir: Path = Path("/var/lib/cni")

    # Timeouts
    socket_wait_timeout_seconds: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS
    kill_shutdown_timeout_seconds: float = constants.DEFAULT_KILL_SHUTDOWN_TIMEOUT_SECONDS
    shutdown_graceful_timeout_seconds: int = constants.DEFAULT_SHUTDOWN_GRACEFUL_TIMEOUT_SECONDS

    # Stop protocol
    preserve_jail_on_stop_failure: bool = False
    """Keep the jail directory when the stop sequence itself fails (forensics)."""

    # Debug
    log_http_calls: bool = False
    """Log every Firecracker API request/response at DEBUG level."""

    @property
    def is_production(self) -> bool:
        return self.environment == "production"
