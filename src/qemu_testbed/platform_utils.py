"""Cross-platform OS detection and process wrappers.

Uses psutil's built-in OS detection constants for platform identification.
Provides PID-reuse safe process management wrappers, both for children this
process spawned (ProcessWrapper) and for hypervisors re-attached by PID from
a pid file (AttachedProcess).
"""

import asyncio
import contextlib
from enum import Enum, auto
from functools import cache

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM when /dev/kvm is usable)."""

    MACOS = auto()
    """macOS (HVF)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS (TCG only)."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID monitoring.
    Protects against PID reuse edge cases where OS recycles PIDs.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread so a hung
        /proc read cannot stall the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
            # Exited but not yet reaped children are zombies, not running
            return running and await asyncio.to_thread(self.psutil_proc.status) != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        """Wait for process to complete."""
        return await self.async_proc.wait()

    async def terminate(self) -> None:
        """Terminate process (SIGTERM) - async, non-blocking."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Kill process (SIGKILL) - async, non-blocking."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            self.async_proc.kill()

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        """Wait for process to terminate and return stdout/stderr."""
        return await self.async_proc.communicate(input)

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for process exit with timeout.

        The hypervisor's output goes to the console log, never to pipes,
        so there is nothing to drain.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        await asyncio.wait_for(self.wait(), timeout=timeout)
        return self.returncode  # type: ignore[return-value]


class AttachedProcess:
    """Process re-attached by PID (not a child of this orchestrator).

    Exposes the same surface as ProcessWrapper so cleanup code can treat both
    alike. Exit codes of non-children are unknowable; returncode reports 0
    once the process is gone.
    """

    def __init__(self, pid: int) -> None:
        self._pid = pid
        self._gone = False
        self.psutil_proc: psutil.Process | None = None
        try:
            self.psutil_proc = psutil.Process(pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            self._gone = True

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> int | None:
        if self._gone or self.psutil_proc is None:
            return 0
        try:
            if self.psutil_proc.is_running() and self.psutil_proc.status() != psutil.STATUS_ZOMBIE:
                return None
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        self._gone = True
        return 0

    async def is_running(self) -> bool:
        return await asyncio.to_thread(lambda: self.returncode is None)

    async def wait(self) -> int:
        while await self.is_running():
            await asyncio.sleep(0.1)
        return 0

    async def terminate(self) -> None:
        if self.psutil_proc is not None:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)

    async def kill(self) -> None:
        if self.psutil_proc is not None:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for the process to disappear.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        return await asyncio.wait_for(self.wait(), timeout=timeout)

    def cmdline(self) -> list[str]:
        """Command line of the attached process (empty if unreadable)."""
        if self.psutil_proc is None:
            return []
        try:
            return self.psutil_proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return []
