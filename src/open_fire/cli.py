"""Command-line interface for open-fire.

Usage:
    open-fire serve                              # HTTP API on OPEN_FIRE_HOST:OPEN_FIRE_PORT
    open-fire serve --port 9090 --log-level DEBUG
    open-fire stop --id <vm-id> --pid 4242 --arch x86_64
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
import uvicorn

from open_fire import __version__
from open_fire._logging import configure_logging
from open_fire.api import create_app
from open_fire.config import StopConfig
from open_fire.exceptions import ConfigValidationError, OpenFireError
from open_fire.models import StopVMRequest
from open_fire.settings import Settings
from open_fire.stop_protocol import stop_vm

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_STOP_ERROR = 1
EXIT_CLI_ERROR = 2


def format_error(title: str, message: str) -> str:
    return f"{click.style('Error:', fg='red', bold=True)} {title}\n\n  {message}"


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", prog_name="open-fire")
def main() -> None:
    """Launch, supervise and stop jailed Firecracker microVMs."""


@main.command()
@click.option("--host", default=None, help="Bind address (default: OPEN_FIRE_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: OPEN_FIRE_PORT)")
@click.option("--log-level", default=None, help="Log level, e.g. DEBUG or WARNING")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
def serve(host: str | None, port: int | None, log_level: str | None, quiet: bool) -> None:
    """Run the HTTP API."""
    settings = Settings()
    configure_logging(level=log_level, quiet=quiet)
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_level="error" if quiet else (log_level or "info").lower(),
    )


@main.command()
@click.option("--id", "vm_id", required=True, help="VM id (jail directory name)")
@click.option("--pid", type=int, default=0, show_default=True, help="PID of the Firecracker process")
@click.option("--arch", required=True, help="Host architecture: x86_64 or aarch64")
@click.option("--chroot-base", type=click.Path(path_type=Path), default=None, help="Jailer chroot base directory")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
def stop(vm_id: str, pid: int, arch: str, chroot_base: Path | None, quiet: bool) -> None:
    """Stop a VM by id/PID and remove its jail directory."""
    settings = Settings()
    configure_logging(quiet=quiet)

    request = StopVMRequest(vmm_id=vm_id, pid=pid, arch=arch, jailer_chroot_base=str(chroot_base or ""))
    try:
        cfg = StopConfig.from_request(request, settings)
        result = asyncio.run(stop_vm(cfg, settings))
    except ConfigValidationError as e:
        click.echo(format_error("Invalid arguments", e.message), err=True)
        sys.exit(EXIT_CLI_ERROR)
    except OpenFireError as e:
        click.echo(format_error("Stop failed", e.message), err=True)
        sys.exit(EXIT_STOP_ERROR)

    click.echo(result)
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
