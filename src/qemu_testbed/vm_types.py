"""Instance lifecycle states and allowed transitions."""

from enum import Enum


class InstanceState(Enum):
    """Lifecycle state of one test instance."""

    INIT = "init"
    ALLOCATED = "allocated"
    OVERLAID = "overlaid"
    LAUNCHED = "launched"
    BOOTING = "booting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES: frozenset[InstanceState] = frozenset({InstanceState.STOPPED, InstanceState.FAILED})

# Retries re-enter ALLOCATED from any point of the OVERLAID..BOOTING span.
# STOPPING is reachable from every live state (normal stop or interrupt).
VALID_STATE_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.INIT: {InstanceState.ALLOCATED, InstanceState.STOPPING, InstanceState.FAILED},
    InstanceState.ALLOCATED: {InstanceState.OVERLAID, InstanceState.STOPPING, InstanceState.FAILED},
    InstanceState.OVERLAID: {
        InstanceState.LAUNCHED,
        InstanceState.ALLOCATED,
        InstanceState.STOPPING,
        InstanceState.FAILED,
    },
    InstanceState.LAUNCHED: {
        InstanceState.BOOTING,
        InstanceState.ALLOCATED,
        InstanceState.STOPPING,
        InstanceState.FAILED,
    },
    InstanceState.BOOTING: {
        InstanceState.READY,
        InstanceState.ALLOCATED,
        InstanceState.STOPPING,
        InstanceState.FAILED,
    },
    InstanceState.READY: {InstanceState.STOPPING, InstanceState.FAILED},
    InstanceState.STOPPING: {InstanceState.STOPPED, InstanceState.FAILED},
    InstanceState.STOPPED: set(),
    InstanceState.FAILED: set(),
}


class AccelType(Enum):
    """QEMU accelerator."""

    KVM = "kvm"
    HVF = "hvf"
    TCG = "tcg"

    @property
    def is_hardware(self) -> bool:
        return self is not AccelType.TCG
