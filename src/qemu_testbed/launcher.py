"""Hypervisor process launch.

A launch is: preflight host checks, console header, last-moment port
verification, spawn, and a short survival check. Anything that goes wrong
is a ProcessLaunchError, which the lifecycle controller retries.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import NoReturn

import aiofiles
import psutil

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.cleanup import CleanupManager
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.console_log import find_fatal_patterns, tail_lines
from qemu_testbed.exceptions import ProcessLaunchError
from qemu_testbed.instance import InstancePaths
from qemu_testbed.models import ResourceAllocation
from qemu_testbed.platform_utils import ProcessWrapper
from qemu_testbed.port_forward import PortReservation
from qemu_testbed.qemu_cmd import build_qemu_cmd
from qemu_testbed.resource_cleanup import remove_file
from qemu_testbed.system_probes import detect_accel_type

logger = get_logger(__name__)

_MB = 1024 * 1024


class ProcessLauncher:
    """Starts one hypervisor process per call to launch()."""

    def __init__(self, config: OrchestratorConfig, cleanup: CleanupManager) -> None:
        self.config = config
        self.cleanup = cleanup

    async def launch(
        self,
        allocation: ResourceAllocation,
        paths: InstancePaths,
        reservation: PortReservation,
    ) -> ProcessWrapper:
        """Start the hypervisor for one attempt.

        The process is registered with the cleanup manager as soon as it
        exists, so a failure anywhere after spawn still tears it down.

        Raises:
            ProcessLaunchError: Preflight failed, the binary could not be
                started, or the process exited within the launch grace period
                (bind_conflict=True when a forwarded port was taken)
        """
        instance_id = paths.instance_id
        await self._preflight(instance_id)
        await self._write_header(paths)

        await asyncio.to_thread(reservation.verify)

        accel = await detect_accel_type(self.config.qemu_bin, self.config.accel)
        cmd = build_qemu_cmd(self.config, allocation, paths, accel)

        # QEMU recreates the socket; a leftover file from a killed attempt must go first
        await remove_file(paths.monitor_socket, instance_id, "stale monitor socket")
        self.cleanup.register_file(paths.monitor_socket, "monitor socket")

        logger.info(
            "Launching hypervisor",
            extra={
                "instance_id": instance_id,
                "accel": accel.value,
                "memory_mb": allocation.memory_mb,
                "cpus": allocation.cpus,
                "ports": list(allocation.ports),
            },
        )
        logger.debug("Hypervisor command", extra={"instance_id": instance_id, "cmd": " ".join(cmd)})

        try:
            # stderr shares the console log so QEMU's own errors land next to guest output
            with open(paths.console_log, "ab") as console:  # noqa: ASYNC230
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=console,
                    start_new_session=True,  # Own process group; terminal SIGINT stays with us
                )
        except OSError as e:
            raise ProcessLaunchError(
                f"Could not start hypervisor: {e}",
                context={"instance_id": instance_id, "qemu_bin": str(self.config.qemu_bin)},
            ) from e

        process = ProcessWrapper(proc)
        self.cleanup.register_process(process)

        await asyncio.sleep(self.config.launch_grace_seconds)
        if not await process.is_running():
            await self._raise_early_exit(process, paths)

        logger.info("Hypervisor started", extra={"instance_id": instance_id, "pid": process.pid})
        return process

    async def _preflight(self, instance_id: str) -> None:
        disk = await asyncio.to_thread(psutil.disk_usage, str(self.config.work_dir))
        free_disk_mb = disk.free // _MB
        if free_disk_mb < self.config.min_free_disk_mb:
            raise ProcessLaunchError(
                f"Insufficient disk space in {self.config.work_dir}: {free_disk_mb} MB free",
                context={
                    "instance_id": instance_id,
                    "free_mb": free_disk_mb,
                    "required_mb": self.config.min_free_disk_mb,
                },
            )

        memory = await asyncio.to_thread(psutil.virtual_memory)
        free_memory_mb = memory.available // _MB
        if free_memory_mb < self.config.min_free_memory_mb:
            raise ProcessLaunchError(
                f"Insufficient free memory: {free_memory_mb} MB available",
                context={
                    "instance_id": instance_id,
                    "available_mb": free_memory_mb,
                    "required_mb": self.config.min_free_memory_mb,
                },
            )

    async def _write_header(self, paths: InstancePaths) -> None:
        started = datetime.now().strftime(constants.CONSOLE_TIMESTAMP_FORMAT)
        async with aiofiles.open(paths.console_log, "a", encoding="utf-8") as f:
            await f.write(f"QEMU Console Log - Instance: {paths.instance_id} - {started}\n")
            await f.write("=" * 60 + "\n")

    async def _raise_early_exit(self, process: ProcessWrapper, paths: InstancePaths) -> NoReturn:
        tail = await tail_lines(paths.console_log)
        bind_lines = [line for line in tail if find_fatal_patterns(line, constants.BIND_CONFLICT_PATTERNS)]
        raise ProcessLaunchError(
            f"Hypervisor exited during startup (returncode={process.returncode})",
            context={
                "instance_id": paths.instance_id,
                "returncode": process.returncode,
                "console_tail": tail[-5:],
            },
            bind_conflict=bool(bind_lines),
        )
