"""Memory/CPU allocation for one instance.

Two-tier policy: honor the caller's request when it is within the static
bounds and safe for the host; otherwise scale it (or a host-derived default)
into range. The host is never starved and small CI machines still get an
instance as long as the absolute minimums fit.

Memory:
    ceiling = 75% of available host memory
    in-bounds request <= ceiling  -> honored exactly
    request out of bounds          -> clamped to [MIN, MAX], then to ceiling
    no request                     -> 25% of available, clamped to [MIN, MAX] and ceiling
    ceiling < MIN_MEMORY_MB        -> ResourceAllocationError

CPU:
    cap = cores - 1 (never below MIN_CPU, so single-core hosts still boot)
    in-bounds request <= cap       -> honored exactly
    otherwise                      -> 50% of cores, clamped to [MIN_CPU, MAX_CPU] and cap
"""

from __future__ import annotations

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.exceptions import ResourceAllocationError
from qemu_testbed.models import HostCapabilities, ResourceAllocation

logger = get_logger(__name__)


def memory_ceiling_mb(host: HostCapabilities) -> int:
    """Largest guest memory the host can spare (75% of available)."""
    return int(host.available_memory_mb * constants.MEMORY_CEILING_RATIO)


def allocate_memory(requested_mb: int | None, host: HostCapabilities) -> int:
    """Pick guest memory in MB.

    Raises:
        ResourceAllocationError: If 75% of available memory is below MIN_MEMORY_MB
    """
    ceiling = memory_ceiling_mb(host)
    if ceiling < constants.MIN_MEMORY_MB:
        raise ResourceAllocationError(
            f"Host cannot spare {constants.MIN_MEMORY_MB} MB: 75% of available memory is {ceiling} MB",
            context={
                "available_memory_mb": host.available_memory_mb,
                "ceiling_mb": ceiling,
                "min_memory_mb": constants.MIN_MEMORY_MB,
            },
        )

    if requested_mb is not None and requested_mb > 0:
        if constants.MIN_MEMORY_MB <= requested_mb <= constants.MAX_MEMORY_MB and requested_mb <= ceiling:
            return requested_mb
        candidate = max(constants.MIN_MEMORY_MB, min(requested_mb, constants.MAX_MEMORY_MB))
    else:
        candidate = int(host.available_memory_mb * constants.DEFAULT_MEMORY_RATIO)
        candidate = max(constants.MIN_MEMORY_MB, min(candidate, constants.MAX_MEMORY_MB))

    memory = min(candidate, ceiling)
    if requested_mb is not None and requested_mb > 0 and memory != requested_mb:
        logger.info(
            "Scaled memory request to fit host",
            extra={"requested_mb": requested_mb, "allocated_mb": memory, "ceiling_mb": ceiling},
        )
    return memory


def allocate_cpus(requested: int | None, host: HostCapabilities) -> int:
    """Pick guest vCPU count."""
    cap = max(constants.MIN_CPU, host.cpu_count - constants.HOST_RESERVED_CORES)

    if requested is not None and constants.MIN_CPU <= requested <= constants.MAX_CPU and requested <= cap:
        return requested

    default = int(host.cpu_count * constants.DEFAULT_CPU_RATIO)
    cpus = max(constants.MIN_CPU, min(default, constants.MAX_CPU, cap))
    if requested is not None:
        logger.info(
            "Replaced CPU request with host-derived default",
            extra={"requested": requested, "allocated": cpus, "host_cpu_count": host.cpu_count},
        )
    return cpus


def allocate_resources(
    requested_memory_mb: int | None,
    requested_cpus: int | None,
    host: HostCapabilities,
) -> ResourceAllocation:
    """Compute the memory/CPU allocation for one instance.

    Ports are left unset; the lifecycle controller fills them in from the
    port allocator.

    Raises:
        ResourceAllocationError: If the host cannot satisfy the absolute minimums
    """
    allocation = ResourceAllocation(
        memory_mb=allocate_memory(requested_memory_mb, host),
        cpus=allocate_cpus(requested_cpus, host),
    )
    logger.debug(
        "Resources allocated",
        extra={
            "memory_mb": allocation.memory_mb,
            "cpus": allocation.cpus,
            "host_available_mb": host.available_memory_mb,
            "host_cpu_count": host.cpu_count,
        },
    )
    return allocation
