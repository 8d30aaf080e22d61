"""Low-level release helpers for hypervisor processes and instance files.

Every helper logs failures and returns False instead of raising, so a
teardown always runs to the end and releases as much as it can.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiofiles.os

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.platform_utils import AttachedProcess, ProcessWrapper

logger = get_logger(__name__)

_background_reapers: set[asyncio.Task[None]] = set()


def _reap_in_background(proc: ProcessWrapper | AttachedProcess) -> None:
    """Keep waiting on a process we gave up on so it does not linger as a zombie."""

    async def _reap() -> None:
        try:
            await proc.wait()
        except Exception:  # noqa: BLE001
            logger.debug("Background reap failed", extra={"pid": proc.pid}, exc_info=True)

    task = asyncio.create_task(_reap())
    _background_reapers.add(task)
    task.add_done_callback(_background_reapers.discard)


async def terminate_process(
    proc: ProcessWrapper | AttachedProcess | None,
    context_id: str,
    *,
    name: str = "qemu",
    term_timeout: float = constants.TERM_GRACE_SECONDS,
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop a process: SIGTERM, wait term_timeout, then SIGKILL.

    Args:
        proc: Process to stop (None is a no-op)
        context_id: Instance id for logging
        name: Process name for logging
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if it survived or cleanup errored
    """
    if proc is None:
        return True

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already exited",
                extra={"instance_id": context_id, "returncode": proc.returncode},
            )
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"instance_id": context_id, "pid": proc.pid})
        await proc.terminate()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(
                f"{name} stopped (SIGTERM)",
                extra={"instance_id": context_id, "returncode": proc.returncode},
            )
            return True
        except TimeoutError:
            logger.warning(
                f"{name} ignored SIGTERM, force killing",
                extra={"instance_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
        except TimeoutError:
            logger.error(
                f"{name} survived SIGKILL",
                extra={"instance_id": context_id, "pid": proc.pid, "kill_timeout": kill_timeout},
            )
            _reap_in_background(proc)
            return False
        logger.warning(f"{name} force killed (SIGKILL)", extra={"instance_id": context_id, "pid": proc.pid})
        return True

    except ProcessLookupError:
        logger.debug(f"{name} already gone", extra={"instance_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"instance_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def remove_file(file_path: Path | None, context_id: str, description: str = "file") -> bool:
    """Delete a file; a file that is already gone counts as success.

    Args:
        file_path: File to delete (None is a no-op)
        context_id: Instance id for logging
        description: What the file is, for logging (e.g. "overlay", "monitor socket")

    Returns:
        True if the file no longer exists, False if deletion failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(
            f"{description} could not be deleted",
            extra={
                "instance_id": context_id,
                "path": str(file_path),
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return False

    logger.debug(f"{description} deleted", extra={"instance_id": context_id, "path": str(file_path)})
    return True
