"""Host memory/CPU capacity detection.

Detection priority per dimension: manual override > psutil > conservative
fallback. The detector probes once and serves the cached snapshot for the
rest of the orchestration run.
"""

from __future__ import annotations

import asyncio

import psutil

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.models import HostCapabilities

logger = get_logger(__name__)

_MB = 1024 * 1024


class HostCapabilityDetector:
    """Reads host capacity once and caches it.

    Overrides from OrchestratorConfig win over psutil, which is useful in
    containers where psutil reports the whole machine.
    """

    def __init__(self, config: OrchestratorConfig) -> None:
        self._config = config
        self._cached: HostCapabilities | None = None
        self._lock = asyncio.Lock()

    async def detect(self) -> HostCapabilities:
        """Return host capabilities, probing on first call only."""
        if self._cached is not None:
            return self._cached

        async with self._lock:
            if self._cached is None:
                self._cached = await self._probe()
                logger.info(
                    "Host resources detected",
                    extra={
                        "source": self._cached.source,
                        "total_memory_mb": self._cached.total_memory_mb,
                        "available_memory_mb": self._cached.available_memory_mb,
                        "cpu_count": self._cached.cpu_count,
                    },
                )
            return self._cached

    async def _probe(self) -> HostCapabilities:
        cfg = self._config
        total = cfg.host_total_memory_mb
        available = cfg.host_available_memory_mb
        cpus = cfg.host_cpu_count
        overridden = total is not None and available is not None and cpus is not None
        source = "override" if overridden else "psutil"

        if not overridden:
            try:
                if total is None or available is None:
                    vmem = await asyncio.to_thread(psutil.virtual_memory)
                    total = total if total is not None else int(vmem.total // _MB)
                    available = available if available is not None else int(vmem.available // _MB)
                if cpus is None:
                    cpus = await asyncio.to_thread(psutil.cpu_count)
            except (OSError, AttributeError, RuntimeError) as e:
                logger.warning("Host resource probe failed, using fallback capacity", extra={"error": str(e)})
                source = "fallback"

        if total is None:
            total = constants.FALLBACK_TOTAL_MEMORY_MB
            source = "fallback"
        if available is None:
            available = int(total * constants.FALLBACK_AVAILABLE_MEMORY_RATIO)
            source = "fallback"
        if not cpus:
            # psutil.cpu_count() returns None when undeterminable
            cpus = constants.FALLBACK_CPU_COUNT
            source = "fallback"

        return HostCapabilities(
            total_memory_mb=int(total),
            available_memory_mb=min(int(available), int(total)),
            cpu_count=int(cpus),
            source=source,
        )
