"""Per-instance resource tracking, teardown and failure diagnostics.

Every file and process created for an instance is registered here as soon
as it exists. teardown() releases whatever is registered (processes first,
then files) and clears the registry, so it can run after a failed attempt,
at normal stop and on interrupt without double-releasing anything.

snapshot_diagnostics() writes `diagnostics-{instance_id}-{n}.log` next to
the console log. It is called on every failure path and never raises: each
probe that fails is recorded as unavailable in the artifact instead.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import psutil

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.console_log import find_fatal_patterns, read_lines
from qemu_testbed.instance import InstancePaths
from qemu_testbed.platform_utils import AttachedProcess, ProcessWrapper
from qemu_testbed.port_forward import port_status
from qemu_testbed.resource_cleanup import remove_file, terminate_process

logger = get_logger(__name__)

_MB = 1024 * 1024


@dataclass
class CleanupRegistry:
    """Append-only record of what an instance created since the last teardown."""

    files: list[tuple[Path, str]] = field(default_factory=list)
    processes: list[ProcessWrapper | AttachedProcess] = field(default_factory=list)

    def add_file(self, path: Path, description: str) -> None:
        if all(existing != path for existing, _ in self.files):
            self.files.append((path, description))

    def add_process(self, proc: ProcessWrapper | AttachedProcess) -> None:
        if all(existing.pid != proc.pid for existing in self.processes):
            self.processes.append(proc)

    def drain(self) -> tuple[list[tuple[Path, str]], list[ProcessWrapper | AttachedProcess]]:
        """Hand over everything registered and start empty."""
        files, processes = self.files, self.processes
        self.files, self.processes = [], []
        return files, processes

    def __bool__(self) -> bool:
        return bool(self.files or self.processes)


class CleanupManager:
    """Tracks and releases one instance's resources; writes diagnostics.

    Attributes:
        ports: Forwarded ports of the current attempt, reported in diagnostics
    """

    def __init__(
        self,
        paths: InstancePaths,
        *,
        work_dir: Path,
        term_grace_seconds: float = constants.TERM_GRACE_SECONDS,
    ) -> None:
        self.paths = paths
        self.ports: tuple[int, ...] = ()
        self._work_dir = work_dir
        self._term_grace = term_grace_seconds
        self._registry = CleanupRegistry()
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._created_at = datetime.now()
        self._last_process: ProcessWrapper | AttachedProcess | None = None
        self.diagnostics_paths: list[Path] = []

    @property
    def instance_id(self) -> str:
        return self.paths.instance_id

    @property
    def pending(self) -> bool:
        return bool(self._registry)

    def register_file(self, path: Path, description: str = "file") -> None:
        self._registry.add_file(path, description)

    def register_process(self, proc: ProcessWrapper | AttachedProcess) -> None:
        self._registry.add_process(proc)
        self._last_process = proc

    def register_pid(self, pid: int) -> None:
        """Track a process known only by PID (e.g. re-attached from a pid file)."""
        self.register_process(AttachedProcess(pid))

    def forget(self) -> None:
        """Drop all registrations without releasing them (background handoff)."""
        self._registry.drain()

    async def teardown(self) -> dict[str, bool]:
        """Release everything registered, processes before files.

        Serialized by a lock and shielded from cancellation. Calling it again
        with nothing new registered is a no-op.

        Returns:
            Per-resource success flags (empty when there was nothing to release)
        """
        async with self._lock:
            files, processes = self._registry.drain()
            if not files and not processes:
                return {}

            results: dict[str, bool] = {}
            was_cancelled = False

            # Phase 1: processes (they hold the overlay and socket open)
            try:
                process_results = await asyncio.shield(
                    asyncio.gather(
                        *(
                            terminate_process(proc, self.instance_id, term_timeout=self._term_grace)
                            for proc in processes
                        ),
                        return_exceptions=True,
                    )
                )
                for proc, ok in zip(processes, process_results, strict=True):
                    results[f"process:{proc.pid}"] = ok is True
            except asyncio.CancelledError:
                logger.debug("Teardown phase 1 finished after cancellation", extra={"instance_id": self.instance_id})
                results.update({f"process:{proc.pid}": False for proc in processes})
                was_cancelled = True

            # Phase 2: files
            try:
                file_results = await asyncio.shield(
                    asyncio.gather(
                        *(remove_file(path, self.instance_id, description) for path, description in files),
                        return_exceptions=True,
                    )
                )
                for (path, _description), ok in zip(files, file_results, strict=True):
                    results[str(path)] = ok is True
            except asyncio.CancelledError:
                logger.debug("Teardown phase 2 finished after cancellation", extra={"instance_id": self.instance_id})
                results.update({str(path): False for path, _ in files})
                was_cancelled = True

            if all(results.values()) and not was_cancelled:
                logger.info("Teardown completed", extra={"instance_id": self.instance_id, "results": results})
            else:
                logger.warning(
                    "Teardown completed with errors",
                    extra={"instance_id": self.instance_id, "results": results, "was_cancelled": was_cancelled},
                )
            return results

    async def snapshot_diagnostics(self, reason: str, error: BaseException | None = None) -> Path | None:
        """Write a diagnostics artifact for a failure.

        Args:
            reason: Short description of the failure
            error: Exception that caused it, if any

        Returns:
            Path of the artifact, or None if it could not be written
        """
        path = self.paths.diagnostics(next(self._sequence))
        try:
            content = await self._render_diagnostics(reason, error)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(content)
        except Exception as e:
            logger.error(
                "Failed to write diagnostics",
                extra={"instance_id": self.instance_id, "path": str(path), "error": str(e)},
                exc_info=True,
            )
            return None

        self.diagnostics_paths.append(path)
        logger.info("Diagnostics written", extra={"instance_id": self.instance_id, "path": str(path), "reason": reason})
        return path

    async def _render_diagnostics(self, reason: str, error: BaseException | None) -> str:
        lines = [
            "=== Failure Diagnostics ===",
            f"Reason: {reason}",
            f"Instance ID: {self.instance_id}",
            f"Instance created: {self._created_at.isoformat(timespec='seconds')}",
            f"Generated: {datetime.now().isoformat(timespec='seconds')}",
        ]
        if error is not None:
            lines.append(f"Error: {type(error).__name__}: {error}")
            context: dict[str, Any] = getattr(error, "context", {}) or {}
            lines.extend(f"  {key}: {value}" for key, value in context.items() if key != "diagnostics_path")

        lines.extend(["", "--- Process ---", await self._probe(self._describe_process)])
        lines.extend(["", "--- Ports ---", await self._probe(self._describe_ports)])
        lines.extend(["", "--- Disk ---", await self._probe(self._describe_disk)])

        console = await self._probe_lines(read_lines, self.paths.console_log)
        tail = console[-constants.DIAGNOSTICS_TAIL_LINES :]
        lines.extend(["", f"--- Console log (last {len(tail)} lines) ---", *tail])

        matches = [f"{pattern}: {line}" for line in console for pattern in find_fatal_patterns(line)]
        lines.extend(["", "--- Fatal patterns ---", *(matches or ["none"])])
        return "\n".join(lines) + "\n"

    async def _probe(self, describe: Any) -> str:
        try:
            return await describe()
        except Exception as e:  # noqa: BLE001
            return f"unavailable ({type(e).__name__}: {e})"

    async def _probe_lines(self, reader: Any, path: Path) -> list[str]:
        try:
            return await reader(path)
        except Exception as e:  # noqa: BLE001
            return [f"unavailable ({type(e).__name__}: {e})"]

    async def _describe_process(self) -> str:
        proc = self._last_process
        if proc is None:
            return "no process launched"
        alive = await proc.is_running()
        state = "alive" if alive else f"dead (returncode={proc.returncode})"
        return f"PID {proc.pid}: {state}"

    async def _describe_ports(self) -> str:
        if not self.ports:
            return "no ports allocated"
        status = await asyncio.to_thread(port_status, self.ports)
        return "\n".join(f"{port}: {state}" for port, state in status.items())

    async def _describe_disk(self) -> str:
        usage = await asyncio.to_thread(psutil.disk_usage, str(self._work_dir))
        return f"{self._work_dir}: {usage.free // _MB} MB free of {usage.total // _MB} MB"
