"""System capability probes for accelerator detection.

Probes run once and cache their results. Async probes share a cache
container to avoid global statements.
"""

import asyncio
import os
from pathlib import Path

import aiofiles.os

from qemu_testbed._logging import get_logger
from qemu_testbed.platform_utils import HostOS, detect_host_os
from qemu_testbed.vm_types import AccelType

logger = get_logger(__name__)

_KVM_DEVICE = "/dev/kvm"


class _ProbeCache:
    """Container for cached system probe results.

    Locks are lazily initialized so they bind to the running event loop.
    They prevent concurrent instance starts from each spawning the same
    probe subprocess.
    """

    __slots__ = ("_locks", "hvf", "kvm", "qemu_accels")

    def __init__(self) -> None:
        self.hvf: bool | None = None
        self.kvm: bool | None = None
        self.qemu_accels: dict[str, set[str]] = {}  # qemu binary -> accelerators
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        """Get or create a lock for the given probe (lazy initialization)."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def clear(self) -> None:
        self.hvf = None
        self.kvm = None
        self.qemu_accels.clear()


_probe_cache = _ProbeCache()


async def _probe_qemu_accelerators(qemu_bin: Path) -> set[str]:
    """Ask the hypervisor binary which accelerators it was built with (cached).

    Parses `qemu-system-x86_64 -accel help`, whose output is a header line
    followed by one accelerator per line.

    Returns:
        Set of accelerator names (e.g. {"tcg", "kvm"}); empty if the probe failed
    """
    key = str(qemu_bin)
    if key in _probe_cache.qemu_accels:
        return _probe_cache.qemu_accels[key]

    async with _probe_cache.get_lock(f"qemu_accels:{key}"):
        if key in _probe_cache.qemu_accels:
            return _probe_cache.qemu_accels[key]

        accels: set[str] = set()
        try:
            proc = await asyncio.create_subprocess_exec(
                key,
                "-accel",
                "help",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5)
            if proc.returncode == 0:
                for raw_line in stdout.decode(errors="replace").splitlines():
                    name = raw_line.strip().lower()
                    if name and not name.startswith("accelerator"):
                        accels.add(name)
            else:
                logger.warning(
                    "QEMU accelerator probe failed",
                    extra={"qemu_bin": key, "returncode": proc.returncode},
                )
        except FileNotFoundError:
            logger.warning("QEMU binary not found for accelerator probe", extra={"qemu_bin": key})
        except (OSError, TimeoutError) as e:
            logger.warning("QEMU accelerator probe failed", extra={"qemu_bin": key, "error": str(e)})

        _probe_cache.qemu_accels[key] = accels
        logger.debug("QEMU accelerator probe complete", extra={"qemu_bin": key, "accelerators": sorted(accels)})
        return accels


async def _check_kvm_available(qemu_bin: Path) -> bool:
    """Check /dev/kvm is present and read/writable, and QEMU supports KVM (cached)."""
    if _probe_cache.kvm is not None:
        return _probe_cache.kvm

    async with _probe_cache.get_lock("kvm"):
        if _probe_cache.kvm is not None:
            return _probe_cache.kvm

        if not await aiofiles.os.path.exists(_KVM_DEVICE):
            logger.debug("KVM not available: /dev/kvm does not exist")
            _probe_cache.kvm = False
            return False

        # Catches permission issues that would make QEMU fail or hang
        if not await asyncio.to_thread(os.access, _KVM_DEVICE, os.R_OK | os.W_OK):
            logger.debug("KVM not available: permission denied on /dev/kvm")
            _probe_cache.kvm = False
            return False

        if "kvm" not in await _probe_qemu_accelerators(qemu_bin):
            logger.warning("KVM not available: QEMU binary does not support the KVM accelerator")
            _probe_cache.kvm = False
            return False

        _probe_cache.kvm = True
        return True


async def _check_hvf_available(qemu_bin: Path) -> bool:
    """Check Hypervisor.framework support on macOS and in QEMU (cached)."""
    if _probe_cache.hvf is not None:
        return _probe_cache.hvf

    async with _probe_cache.get_lock("hvf"):
        if _probe_cache.hvf is not None:
            return _probe_cache.hvf

        try:
            proc = await asyncio.create_subprocess_exec(
                "/usr/sbin/sysctl",
                "-n",
                "kern.hv_support",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5)
            supported = proc.returncode == 0 and stdout.decode().strip() == "1"
        except (OSError, TimeoutError) as e:
            logger.debug("HVF not available: sysctl check failed", extra={"error": str(e)})
            supported = False

        if supported and "hvf" not in await _probe_qemu_accelerators(qemu_bin):
            logger.warning("HVF not available: QEMU binary does not support the HVF accelerator")
            supported = False

        _probe_cache.hvf = supported
        return supported


async def detect_accel_type(qemu_bin: Path, requested: str = "auto") -> AccelType:
    """Pick the accelerator for a launch.

    Args:
        qemu_bin: Hypervisor binary to probe
        requested: "auto" to probe, or an explicit "kvm"/"hvf"/"tcg"

    Returns:
        AccelType.KVM on Linux with a usable /dev/kvm,
        AccelType.HVF on macOS with Hypervisor.framework,
        AccelType.TCG otherwise (software emulation)
    """
    if requested != "auto":
        return AccelType(requested)
    host_os = detect_host_os()
    if host_os == HostOS.LINUX and await _check_kvm_available(qemu_bin):
        return AccelType.KVM
    if host_os == HostOS.MACOS and await _check_hvf_available(qemu_bin):
        return AccelType.HVF
    logger.info("No hardware acceleration available, using TCG")
    return AccelType.TCG
