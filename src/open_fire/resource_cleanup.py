"""Resource cleanup utilities for VM lifecycle management.

Cleanup operations that log errors but don't fail. Used on the teardown
paths of RunningVM, the launch provider and the detached stop protocol,
where the primary outcome is already decided.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from open_fire import constants
from open_fire._logging import get_logger
from open_fire.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    vm_id: str,
    term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Force cleanup of subprocess (SIGTERM → SIGKILL).

    Already-dead processes are reaped; ProcessLookupError counts as success.

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g., "jailer")
        vm_id: VM identifier for logging
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if process cleaned successfully, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already terminated",
                extra={"vm_id": vm_id, "returncode": proc.returncode},
            )
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"vm_id": vm_id})
        await proc.terminate()

        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped gracefully (SIGTERM)",
                extra={"vm_id": vm_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"vm_id": vm_id, "term_timeout": term_timeout},
            )

        logger.debug(f"Sending SIGKILL to {name}", extra={"vm_id": vm_id})
        await proc.kill()

        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"vm_id": vm_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False
        logger.warning(
            f"{name} force killed (SIGKILL)",
            extra={"vm_id": vm_id, "returncode": proc.returncode},
        )
        return True

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"vm_id": vm_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"vm_id": vm_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_directory(
    dir_path: Path | None,
    vm_id: str,
    description: str = "directory",
) -> bool:
    """Recursively remove a directory.

    Silently succeeds if the directory doesn't exist, so concurrent duplicate
    removals of the same jail both succeed.

    Args:
        dir_path: Directory to remove (None safe - returns immediately)
        vm_id: VM identifier for logging
        description: Description for logging (e.g., "jail directory")

    Returns:
        True if removed or already absent, False if issues occurred
    """
    if dir_path is None:
        return True

    try:
        await asyncio.to_thread(shutil.rmtree, dir_path)
        logger.debug(
            f"{description} removed",
            extra={"vm_id": vm_id, "path": str(dir_path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already removed",
            extra={"vm_id": vm_id, "path": str(dir_path)},
        )
        return True

    except OSError as e:
        logger.error(
            f"{description} removal error",
            extra={"vm_id": vm_id, "path": str(dir_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    vm_id: str,
    description: str = "file",
) -> bool:
    """Delete file.

    Silently succeeds if file doesn't exist.

    Args:
        file_path: Path to file to delete (None safe - returns immediately)
        vm_id: VM identifier for logging
        description: Description for logging (e.g., "CNI result cache")

    Returns:
        True if file cleaned successfully, False if issues occurred
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"vm_id": vm_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already deleted",
            extra={"vm_id": vm_id, "path": str(file_path)},
        )
        return True

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"vm_id": vm_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
