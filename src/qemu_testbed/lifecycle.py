"""Instance lifecycle orchestration.

InstanceController owns one test VM from allocation to teardown:

    INIT -> ALLOCATED -> OVERLAID -> LAUNCHED -> BOOTING -> READY -> STOPPING -> STOPPED
                 ^           |           |          |
                 +-----------+-----------+----------+   (retry after teardown)

Any live state can also end in FAILED. Launch and boot failures are retried
a bounded number of times; each retry tears down the partial instance first.
Allocation failures are never retried.

The module-level functions at the bottom operate on instances started by
other processes, using only the pid directory and the process table.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiofiles
import aiofiles.os
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.allocation import allocate_resources
from qemu_testbed.cleanup import CleanupManager
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.console_log import current_size, latest_marker, read_lines, write_structured
from qemu_testbed.exceptions import (
    BootFailureError,
    BootTimeoutError,
    ControlChannelError,
    ImageProvisionError,
    InstanceNotFoundError,
    InvalidStateTransitionError,
    ProcessLaunchError,
    TestbedError,
)
from qemu_testbed.host_capabilities import HostCapabilityDetector
from qemu_testbed.instance import Instance, InstancePaths, claim_instance_id
from qemu_testbed.launcher import ProcessLauncher
from qemu_testbed.models import BootReport, InstanceStatus, ResourceAllocation
from qemu_testbed.monitor import ControlChannel
from qemu_testbed.overlay import create_overlay
from qemu_testbed.platform_utils import AttachedProcess, ProcessWrapper
from qemu_testbed.port_forward import PortAllocator, port_status, shared_port_allocator
from qemu_testbed.qemu_cmd import parse_forwarded_ports
from qemu_testbed.readiness import BootReadinessDetector
from qemu_testbed.ticker import Ticker
from qemu_testbed.vm_types import TERMINAL_STATES, InstanceState

logger = get_logger(__name__)

# Failures worth another launch+boot attempt. Overlay errors have their own
# bounded retry and are final once it is exhausted.
_RETRYABLE = (ProcessLaunchError, BootTimeoutError, BootFailureError)

_OVERLAY_SUFFIX = "-overlay.img"
_SOCKET_SUFFIX = "-monitor.sock"


class InstanceController:
    """Starts, monitors and stops a single test instance.

    A controller is single-use: start() once, then stop() (or detach() to
    leave the instance running for a later out-of-process stop).

    Usage:
        controller = InstanceController(config)
        report = await controller.start(memory_mb=512)
        try:
            ...  # connect to controller.allocation.control_port
        finally:
            await controller.stop()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        port_allocator: PortAllocator | None = None,
        host_detector: HostCapabilityDetector | None = None,
    ) -> None:
        """Create a controller.

        Args:
            config: Orchestrator configuration
            port_allocator: Allocator to reserve ports from (default: the
                process-wide allocator for config.forward_host)
            host_detector: Shared host capability detector (default: a private one)
        """
        self.config = config
        self.port_allocator = port_allocator or shared_port_allocator(config.forward_host)
        self.host_detector = host_detector or HostCapabilityDetector(config)
        self.instance: Instance | None = None
        self.cleanup: CleanupManager | None = None
        self.report: BootReport | None = None
        self._detached = False

    @property
    def state(self) -> InstanceState:
        return self.instance.state if self.instance else InstanceState.INIT

    @property
    def instance_id(self) -> str | None:
        return self.instance.instance_id if self.instance else None

    @property
    def allocation(self) -> ResourceAllocation | None:
        return self.instance.allocation if self.instance else None

    async def start(
        self,
        memory_mb: int | None = None,
        cpus: int | None = None,
        *,
        boot_timeout: float | None = None,
    ) -> BootReport:
        """Allocate, provision, launch and wait for the instance to be ready.

        Args:
            memory_mb: Requested memory (None: host-derived default)
            cpus: Requested vCPUs (None: host-derived default)
            boot_timeout: Per-attempt boot timeout (default: config value)

        Returns:
            BootReport of the successful attempt

        Raises:
            ResourceAllocationError: Host below minimums (not retried)
            PortExhaustionError: No free port pair (not retried)
            ImageProvisionError: Overlay could not be created
            ProcessLaunchError, BootTimeoutError, BootFailureError: Last
                attempt's error after all attempts failed
            InvalidStateTransitionError: Controller already used

        Every raised TestbedError carries ``diagnostics_path`` in its context.
        On cancellation the instance is torn down and marked FAILED before
        CancelledError propagates.
        """
        if self.instance is not None:
            raise InvalidStateTransitionError(
                "Controller already started an instance",
                context={"instance_id": self.instance.instance_id, "state": self.instance.state.value},
            )

        paths = await claim_instance_id(self.config)
        instance = Instance(paths=paths)
        self.instance = instance
        self.cleanup = CleanupManager(
            paths,
            work_dir=self.config.work_dir,
            term_grace_seconds=self.config.term_grace_seconds,
        )
        logger.info("Starting instance", extra={"instance_id": instance.instance_id})

        try:
            report = await self._start(instance, memory_mb, cpus, boot_timeout)
        except asyncio.CancelledError:
            logger.warning(
                "Start interrupted",
                extra={"instance_id": instance.instance_id, "state": instance.state.value},
            )
            await self._fail(instance, "interrupted")
            raise
        except TestbedError as e:
            await self._fail(instance, e.message, e)
            raise

        self.report = report
        return report

    async def _start(
        self,
        instance: Instance,
        memory_mb: int | None,
        cpus: int | None,
        boot_timeout: float | None,
    ) -> BootReport:
        host = await self.host_detector.detect()
        instance.allocation = allocate_resources(memory_mb, cpus, host)
        await instance.transition_state(InstanceState.ALLOCATED)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_boot_retries),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type(_RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._attempt(instance, boot_timeout)

        # Unreachable: AsyncRetrying either returns or raises
        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def _attempt(self, instance: Instance, boot_timeout: float | None) -> BootReport:
        """One launch+boot attempt, starting and (on retryable failure) ending in ALLOCATED."""
        assert self.cleanup is not None
        assert instance.allocation is not None
        instance.attempts += 1
        paths = instance.paths
        logger.info(
            "Boot attempt",
            extra={"instance_id": instance.instance_id, "attempt": instance.attempts},
        )

        try:
            if instance.reservation is None:
                instance.reservation = self.port_allocator.allocate_pair(
                    self.config.port_range_start, self.config.port_range_end
                )
                instance.allocation = instance.allocation.with_ports(*instance.reservation.ports)
                self.cleanup.ports = instance.reservation.ports

            self.cleanup.register_file(paths.overlay, "overlay")
            await self._provision_overlay(instance)
            await instance.transition_state(InstanceState.OVERLAID)

            # Output of earlier attempts stays in the log; readiness only looks past this point
            start_offset = await current_size(paths.console_log)
            launcher = ProcessLauncher(self.config, self.cleanup)
            instance.process = await launcher.launch(instance.allocation, paths, instance.reservation)
            await instance.transition_state(InstanceState.LAUNCHED)

            await self._write_pid_file(paths, instance.process)
            await instance.transition_state(InstanceState.BOOTING)

            detector = BootReadinessDetector(
                paths.console_log,
                self._control_channel(paths),
                instance.process,
                self.config,
                diagnostics=self.cleanup,
                start_offset=start_offset,
                context_id=instance.instance_id,
            )
            report = await detector.wait_for_ready(boot_timeout)
            await instance.transition_state(InstanceState.READY)

        except _RETRYABLE as e:
            await self._abort_attempt(instance, e)
            raise

        logger.info(
            "Instance started",
            extra={
                "instance_id": instance.instance_id,
                "attempt": instance.attempts,
                "ports": list(instance.allocation.ports),
                "pid": instance.process.pid,
            },
        )
        return report

    async def _provision_overlay(self, instance: Instance) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_boot_retries),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_exception_type(ImageProvisionError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await create_overlay(
                    self.config.base_image,
                    instance.paths.overlay,
                    qemu_img_bin=self.config.qemu_img_bin,
                    context_id=instance.instance_id,
                )

    async def _abort_attempt(
        self,
        instance: Instance,
        error: ProcessLaunchError | BootTimeoutError | BootFailureError,
    ) -> None:
        """Tear down a failed attempt and return to ALLOCATED for the next one."""
        assert self.cleanup is not None
        if error.diagnostics_path is None:
            path = await self.cleanup.snapshot_diagnostics(f"attempt {instance.attempts} failed", error)
            if path is not None:
                error.context["diagnostics_path"] = str(path)

        await self.cleanup.teardown()
        instance.process = None

        if error.bind_conflict and instance.reservation is not None:
            logger.warning(
                "Forwarded port conflict, reallocating ports",
                extra={"instance_id": instance.instance_id, "ports": list(instance.reservation.ports)},
            )
            instance.reservation.release()
            instance.reservation = None

        if instance.state is not InstanceState.ALLOCATED:
            await instance.transition_state(InstanceState.ALLOCATED)

    async def _fail(self, instance: Instance, reason: str, error: TestbedError | None = None) -> None:
        """Snapshot (unless already done), tear down, mark FAILED. Never raises."""
        assert self.cleanup is not None
        if error is None or error.diagnostics_path is None:
            path = await self.cleanup.snapshot_diagnostics(reason, error)
            if error is not None and path is not None:
                error.context["diagnostics_path"] = str(path)

        await self._release(instance)
        if instance.state not in TERMINAL_STATES:
            await instance.transition_state(InstanceState.FAILED)
        logger.error(
            "Instance failed",
            extra={
                "instance_id": instance.instance_id,
                "reason": reason,
                "attempts": instance.attempts,
                "diagnostics": [str(p) for p in self.cleanup.diagnostics_paths],
            },
        )

    async def _release(self, instance: Instance) -> None:
        assert self.cleanup is not None
        self.cleanup.register_file(instance.paths.pid_file, "pid file")
        await self.cleanup.teardown()
        instance.process = None
        if instance.reservation is not None:
            instance.reservation.release()
            instance.reservation = None

    async def stop(self) -> None:
        """Shut the instance down and release everything it holds.

        Graceful power-down first, then SIGTERM and SIGKILL. Overlay, monitor
        socket and pid file are removed; the console log is kept. Safe to call
        more than once and in any state.

        Cancelled while waiting for the power-down, the instance is still
        released (signals, files, ports) and marked FAILED before
        CancelledError propagates.
        """
        instance = self.instance
        if (
            instance is None
            or self._detached
            or instance.state in TERMINAL_STATES
            or instance.state is InstanceState.STOPPING
        ):
            return

        await instance.transition_state(InstanceState.STOPPING)
        try:
            if instance.process is not None:
                await _graceful_shutdown(
                    instance.process,
                    self._control_channel(instance.paths),
                    self.config,
                    instance.instance_id,
                )
        except asyncio.CancelledError:
            logger.warning("Stop interrupted", extra={"instance_id": instance.instance_id})
            await self._fail(instance, "interrupted during stop")
            raise
        await self._release(instance)
        await instance.transition_state(InstanceState.STOPPED)
        logger.info("Instance stopped", extra={"instance_id": instance.instance_id})

    def detach(self) -> InstancePaths:
        """Leave a READY instance running after this controller goes away.

        The pid file stays, so stop_instance() can find the process later.

        Raises:
            InvalidStateTransitionError: If the instance is not READY
        """
        instance = self.instance
        if instance is None or instance.state is not InstanceState.READY:
            raise InvalidStateTransitionError(
                "Only a ready instance can be detached",
                context={"state": self.state.value},
            )
        assert self.cleanup is not None
        self.cleanup.forget()
        self._detached = True
        if instance.reservation is not None:
            instance.reservation.release()
        logger.info(
            "Instance detached",
            extra={"instance_id": instance.instance_id, "pid_file": str(instance.paths.pid_file)},
        )
        return instance.paths

    def _control_channel(self, paths: InstancePaths) -> ControlChannel:
        return ControlChannel(
            paths.monitor_socket,
            timeout=self.config.control_channel_timeout_seconds,
            context_id=paths.instance_id,
        )

    async def _write_pid_file(self, paths: InstancePaths, process: ProcessWrapper) -> None:
        assert self.cleanup is not None
        self.cleanup.register_file(paths.pid_file, "pid file")
        async with aiofiles.open(paths.pid_file, "w") as f:
            await f.write(f"{process.pid}\n")


async def _graceful_shutdown(
    process: ProcessWrapper | AttachedProcess,
    channel: ControlChannel,
    config: OrchestratorConfig,
    instance_id: str,
) -> bool:
    """Ask the guest to power off and wait for the hypervisor to exit.

    Returns:
        True if the process exited on its own; False means the caller must
        fall back to signals
    """
    if not await process.is_running():
        return True
    try:
        await channel.powerdown()
    except ControlChannelError as e:
        logger.warning(
            "Graceful power-down unavailable, falling back to signals",
            extra={"instance_id": instance_id, "error": e.message},
        )
        return False

    logger.info(
        "Power-down requested",
        extra={"instance_id": instance_id, "timeout": config.shutdown_timeout_seconds},
    )
    interval = min(config.poll_interval_seconds, max(config.shutdown_timeout_seconds, 0.1))
    async for elapsed in Ticker(interval):
        if not await process.is_running():
            logger.info("Guest powered off", extra={"instance_id": instance_id, "elapsed": round(elapsed, 2)})
            return True
        if elapsed >= config.shutdown_timeout_seconds:
            break

    logger.warning(
        "Guest did not power off in time",
        extra={"instance_id": instance_id, "timeout": config.shutdown_timeout_seconds},
    )
    return False


# =============================================================================
# Out-of-process operations (pid directory)
# =============================================================================


async def _read_pid(pid_file: Path) -> int | None:
    try:
        async with aiofiles.open(pid_file) as f:
            return int((await f.read()).strip())
    except (OSError, ValueError):
        return None


def _attach(instance_id: str, pid: int | None) -> AttachedProcess | None:
    """Re-attach to an instance's hypervisor, or None if it is not running.

    The process command line must name the instance, so a recycled PID is
    never mistaken for the hypervisor.
    """
    if pid is None:
        return None
    proc = AttachedProcess(pid)
    if proc.returncode is not None:
        return None
    if not any(instance_id in arg for arg in proc.cmdline()):
        logger.warning("PID does not belong to instance", extra={"instance_id": instance_id, "pid": pid})
        return None
    return proc


async def _require_pid_file(config: OrchestratorConfig, instance_id: str) -> InstancePaths:
    paths = InstancePaths.for_instance(instance_id, config)
    if not await aiofiles.os.path.exists(paths.pid_file):
        raise InstanceNotFoundError(
            f"No such instance: {instance_id}",
            context={"instance_id": instance_id, "pid_file": str(paths.pid_file)},
        )
    return paths


async def instance_status(config: OrchestratorConfig, instance_id: str) -> InstanceStatus:
    """Status of an instance from its pid file, process and console log.

    Raises:
        InstanceNotFoundError: No pid file for instance_id
    """
    paths = await _require_pid_file(config, instance_id)
    pid = await _read_pid(paths.pid_file)
    proc = await asyncio.to_thread(_attach, instance_id, pid)
    ports = parse_forwarded_ports(await asyncio.to_thread(proc.cmdline)) if proc else ()

    ready = False
    for marker in constants.READY_MARKERS:
        if await latest_marker(paths.console_log, marker) is not None:
            ready = True
            break
    version = await latest_marker(paths.console_log, constants.USBIP_VERSION_MARKER)

    return InstanceStatus(
        instance_id=instance_id,
        pid=pid,
        running=proc is not None,
        pid_file=paths.pid_file,
        console_log=paths.console_log,
        ports=ports,
        ready=ready,
        usbip_version=version.message if version else None,
    )


async def list_instances(config: OrchestratorConfig) -> list[InstanceStatus]:
    """Status of every instance that has a pid file, oldest id first."""
    if not await aiofiles.os.path.isdir(config.pid_dir):
        return []
    names = sorted(await aiofiles.os.listdir(config.pid_dir))
    statuses = []
    for name in names:
        if name.endswith(".pid"):
            statuses.append(await instance_status(config, name.removesuffix(".pid")))
    return statuses


async def stop_instance(config: OrchestratorConfig, instance_id: str) -> bool:
    """Stop an instance started by another process (e.g. `start --background`).

    Returns:
        True if the process is gone and its files were removed

    Raises:
        InstanceNotFoundError: No pid file for instance_id
    """
    paths = await _require_pid_file(config, instance_id)
    pid = await _read_pid(paths.pid_file)
    proc = await asyncio.to_thread(_attach, instance_id, pid)

    cleanup = CleanupManager(paths, work_dir=config.work_dir, term_grace_seconds=config.term_grace_seconds)
    if proc is not None:
        channel = ControlChannel(
            paths.monitor_socket,
            timeout=config.control_channel_timeout_seconds,
            context_id=instance_id,
        )
        await _graceful_shutdown(proc, channel, config, instance_id)
        cleanup.register_process(proc)
    else:
        logger.info("Instance process not running, removing files", extra={"instance_id": instance_id, "pid": pid})

    cleanup.register_file(paths.overlay, "overlay")
    cleanup.register_file(paths.monitor_socket, "monitor socket")
    cleanup.register_file(paths.pid_file, "pid file")
    results = await cleanup.teardown()
    ok = all(results.values())
    logger.info("Instance stopped", extra={"instance_id": instance_id, "clean": ok})
    return ok


async def stop_instances(config: OrchestratorConfig) -> dict[str, bool]:
    """Stop every instance in the pid directory."""
    results: dict[str, bool] = {}
    for status in await list_instances(config):
        results[status.instance_id] = await stop_instance(config, status.instance_id)
    return results


async def smoke_test_instance(config: OrchestratorConfig, instance_id: str) -> dict[str, bool]:
    """Check that a running instance is usable and record the result in its console log.

    Checks: process alive, console log non-empty, monitor socket present,
    hypervisor answers `info version`, both forwarded ports bound.

    Returns:
        Check name -> passed

    Raises:
        InstanceNotFoundError: No pid file for instance_id
    """
    paths = await _require_pid_file(config, instance_id)
    proc = await asyncio.to_thread(_attach, instance_id, await _read_pid(paths.pid_file))

    checks: dict[str, bool] = {
        "process_running": proc is not None,
        "console_log": bool(await read_lines(paths.console_log)),
        "monitor_socket": paths.monitor_socket.is_socket(),
    }

    channel = ControlChannel(
        paths.monitor_socket,
        timeout=config.control_channel_timeout_seconds,
        context_id=instance_id,
    )
    try:
        version = await channel.query_version()
        checks["monitor_responds"] = bool(version)
    except ControlChannelError as e:
        logger.warning("Monitor did not answer", extra={"instance_id": instance_id, "error": e.message})
        checks["monitor_responds"] = False

    ports = parse_forwarded_ports(await asyncio.to_thread(proc.cmdline)) if proc else ()
    status = await asyncio.to_thread(port_status, ports, config.forward_host)
    checks["ports_bound"] = bool(ports) and all(state == "bound" for state in status.values())

    passed = all(checks.values())
    summary = ", ".join(f"{name}={'ok' if ok else 'FAIL'}" for name, ok in checks.items())
    verdict = "PASS" if passed else "FAIL"
    await write_structured(paths.console_log, constants.TEST_COMPLETE_MARKER, f"{verdict}: {summary}")
    logger.info("Smoke test finished", extra={"instance_id": instance_id, "passed": passed, "checks": checks})
    return checks


async def cleanup_orphans(config: OrchestratorConfig) -> list[Path]:
    """Remove files left by instances whose hypervisor is no longer running.

    Stale pid files go, along with overlays and monitor sockets that no live
    instance owns. Console logs and diagnostics are kept. Do not run this
    while another orchestrator is starting an instance: its overlay exists
    before its pid file does.

    Returns:
        Paths that were removed
    """
    live: set[str] = set()
    stale: set[str] = set()
    for status in await list_instances(config):
        (live if status.running else stale).add(status.instance_id)

    candidates: list[Path] = [InstancePaths.for_instance(i, config).pid_file for i in sorted(stale)]
    if await aiofiles.os.path.isdir(config.work_dir):
        for name in sorted(await aiofiles.os.listdir(config.work_dir)):
            for suffix in (_OVERLAY_SUFFIX, _SOCKET_SUFFIX):
                if name.endswith(suffix) and name.removesuffix(suffix) not in live:
                    candidates.append(config.work_dir / name)

    removed: list[Path] = []
    for path in candidates:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Could not remove orphan", extra={"path": str(path), "error": str(e)})
            continue
        removed.append(path)

    logger.info("Orphan cleanup finished", extra={"removed": len(removed), "live": sorted(live)})
    return removed
