"""Instance identity, on-disk layout and lifecycle state."""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import aiofiles.os

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.exceptions import InvalidStateTransitionError
from qemu_testbed.models import ResourceAllocation
from qemu_testbed.platform_utils import ProcessWrapper
from qemu_testbed.port_forward import PortReservation
from qemu_testbed.vm_types import VALID_STATE_TRANSITIONS, InstanceState

logger = get_logger(__name__)

# Suffixes tried after the base id before giving up
_MAX_ID_SUFFIX = 1000


@dataclass(frozen=True)
class InstancePaths:
    """Per-instance files.

    overlay, monitor_socket and pid_file are deleted at teardown; the
    console log is retained for post-mortem inspection.
    """

    instance_id: str
    overlay: Path
    console_log: Path
    monitor_socket: Path
    pid_file: Path
    log_dir: Path

    @classmethod
    def for_instance(cls, instance_id: str, config: OrchestratorConfig) -> InstancePaths:
        return cls(
            instance_id=instance_id,
            overlay=config.work_dir / f"{instance_id}-overlay.img",
            console_log=config.log_dir / f"{instance_id}-console.log",
            monitor_socket=config.work_dir / f"{instance_id}-monitor.sock",
            pid_file=config.pid_dir / f"{instance_id}.pid",
            log_dir=config.log_dir,
        )

    def diagnostics(self, sequence: int) -> Path:
        """Path of the n-th diagnostics artifact for this instance."""
        return self.log_dir / f"diagnostics-{self.instance_id}-{sequence}.log"


async def ensure_directories(config: OrchestratorConfig) -> None:
    for directory in (config.work_dir, config.log_dir, config.pid_dir):
        await aiofiles.os.makedirs(directory, exist_ok=True)


async def claim_instance_id(
    config: OrchestratorConfig,
    *,
    now: float | None = None,
    pid: int | None = None,
) -> InstancePaths:
    """Generate a unique instance id and claim it on disk.

    Ids look like `qemu-usbip-{epoch}-{pid}`. The claim is the exclusive
    creation of the console log, so two orchestrators (or two instances in
    one process) racing for the same second cannot both win; the loser
    retries with a `-{n}` suffix. Candidates whose pid file or overlay
    already exist are skipped as well.

    Returns:
        Paths for the claimed id (console log exists and is empty)
    """
    await ensure_directories(config)
    epoch = int(now if now is not None else time.time())
    base_id = f"{constants.INSTANCE_ID_PREFIX}-{epoch}-{pid if pid is not None else os.getpid()}"

    for n in range(_MAX_ID_SUFFIX):
        candidate = base_id if n == 0 else f"{base_id}-{n}"
        paths = InstancePaths.for_instance(candidate, config)
        if await aiofiles.os.path.exists(paths.pid_file) or await aiofiles.os.path.exists(paths.overlay):
            continue
        try:
            async with aiofiles.open(paths.console_log, "x"):
                pass
        except FileExistsError:
            continue
        if n:
            logger.debug("Instance id collision resolved", extra={"base_id": base_id, "instance_id": candidate})
        return paths

    raise RuntimeError(f"Could not claim a unique instance id for {base_id}")


@dataclass
class Instance:
    """One test VM owned by a single InstanceController."""

    paths: InstancePaths
    state: InstanceState = InstanceState.INIT
    allocation: ResourceAllocation | None = None
    reservation: PortReservation | None = None
    process: ProcessWrapper | None = None
    attempts: int = 0
    _state_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def instance_id(self) -> str:
        return self.paths.instance_id

    async def transition_state(self, new_state: InstanceState) -> InstanceState:
        """Move to new_state, validated against VALID_STATE_TRANSITIONS.

        Returns:
            The previous state

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        async with self._state_lock:
            allowed = VALID_STATE_TRANSITIONS.get(self.state, set())
            if new_state not in allowed:
                raise InvalidStateTransitionError(
                    f"Invalid state transition: {self.state.value} -> {new_state.value}",
                    context={
                        "instance_id": self.instance_id,
                        "current_state": self.state.value,
                        "target_state": new_state.value,
                        "allowed_transitions": sorted(s.value for s in allowed),
                    },
                )
            old_state = self.state
            self.state = new_state
            logger.debug(
                "Instance state transition",
                extra={"instance_id": self.instance_id, "old_state": old_state.value, "new_state": new_state.value},
            )
            return old_state
