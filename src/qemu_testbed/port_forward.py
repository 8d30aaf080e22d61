"""Host port allocation for guest service forwarding.

Each instance forwards two host ports to fixed guest ports (SSH and USB/IP).
Allocation is check-then-reserve: a port counts as free when nothing is
bound to it and no other allocation from this allocator holds it. The OS is
not locked between the check and QEMU's bind, so PortReservation.verify()
re-probes right before launch and a lost race surfaces as a retryable
ProcessLaunchError(bind_conflict=True).
"""

from __future__ import annotations

import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.exceptions import PortExhaustionError, ProcessLaunchError

logger = get_logger(__name__)


def is_port_bound(port: int, host: str = constants.PORT_FORWARD_BIND_HOST) -> bool:
    """Probe whether a TCP port is taken by trying to bind it.

    SO_REUSEADDR mirrors how QEMU's user-mode network binds forwarded
    ports, so sockets lingering in TIME_WAIT do not count as bound.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return True
    return False


@dataclass
class PortReservation:
    """A pair of ports held by one instance until released."""

    control_port: int
    data_port: int
    _allocator: PortAllocator = field(repr=False)
    _released: bool = field(default=False, repr=False)

    @property
    def ports(self) -> tuple[int, int]:
        return (self.control_port, self.data_port)

    def verify(self) -> None:
        """Confirm both ports are still unbound immediately before launch.

        Raises:
            ProcessLaunchError: bind_conflict=True if another process took a port
        """
        taken = [p for p in self.ports if self._allocator.is_bound(p)]
        if taken:
            raise ProcessLaunchError(
                f"Forwarded port(s) taken since allocation: {taken}",
                context={"ports": list(self.ports), "taken": taken},
                bind_conflict=True,
            )

    def release(self) -> None:
        """Return the ports to the allocator (idempotent)."""
        if not self._released:
            self._allocator.release(self.ports)
            self._released = True


class PortAllocator:
    """Scans a port range for pairs of free ports.

    Reservations are per allocator. InstanceController defaults to
    shared_port_allocator(), so instances started concurrently in one
    process never receive overlapping pairs even before QEMU binds them.
    """

    def __init__(
        self,
        is_bound: Callable[[int], bool] | None = None,
        host: str = constants.PORT_FORWARD_BIND_HOST,
    ) -> None:
        """Create an allocator.

        Args:
            is_bound: Probe returning True when a port is in use (default: bind probe)
            host: Address the probe binds to
        """
        self._probe = is_bound or (lambda port: is_port_bound(port, host))
        self._reserved: set[int] = set()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    def is_bound(self, port: int) -> bool:
        return self._probe(port)

    def _is_free(self, port: int) -> bool:
        return port not in self._reserved and not self._probe(port)

    def allocate_pair(
        self,
        range_start: int = constants.PORT_RANGE_START,
        range_end: int = constants.PORT_RANGE_END,
    ) -> PortReservation:
        """Reserve two distinct free ports from [range_start, range_end].

        The first port is the lowest free port. The second is the next free
        port scanning forward from port1 + 1, wrapping once to range_start.

        Raises:
            PortExhaustionError: If the range holds fewer than two free ports
        """
        port1 = next((p for p in range(range_start, range_end + 1) if self._is_free(p)), None)
        if port1 is None:
            raise PortExhaustionError(
                f"No free port in range {range_start}-{range_end}",
                context={"range_start": range_start, "range_end": range_end},
            )
        self._reserved.add(port1)

        wrapped = [*range(port1 + 1, range_end + 1), *range(range_start, port1)]
        port2 = next((p for p in wrapped if self._is_free(p)), None)
        if port2 is None:
            self._reserved.discard(port1)
            raise PortExhaustionError(
                f"Only one free port in range {range_start}-{range_end}",
                context={"range_start": range_start, "range_end": range_end, "free_port": port1},
            )
        self._reserved.add(port2)

        logger.debug("Allocated port pair", extra={"ports": [port1, port2]})
        return PortReservation(control_port=port1, data_port=port2, _allocator=self)

    def release(self, ports: Iterable[int]) -> None:
        for port in ports:
            self._reserved.discard(port)


_shared_allocators: dict[str, PortAllocator] = {}


def shared_port_allocator(host: str = constants.PORT_FORWARD_BIND_HOST) -> PortAllocator:
    """The process-wide allocator for ``host``, created on first use."""
    allocator = _shared_allocators.get(host)
    if allocator is None:
        allocator = _shared_allocators[host] = PortAllocator(host=host)
    return allocator


def port_status(ports: Iterable[int], host: str = constants.PORT_FORWARD_BIND_HOST) -> dict[int, str]:
    """Map each port to "bound" or "free" (for diagnostics; never raises)."""
    status: dict[int, str] = {}
    for port in ports:
        try:
            status[port] = "bound" if is_port_bound(port, host) else "free"
        except Exception as e:  # noqa: BLE001
            status[port] = f"unknown ({e})"
    return status
