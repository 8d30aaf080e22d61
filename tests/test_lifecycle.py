"""End-to-end lifecycle tests against fake qemu-img and hypervisor scripts.

Each test drives the real InstanceController: real subprocesses, real
files under tmp_path, real port probing. Only QEMU itself is faked.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.exceptions import (
    BootFailureError,
    BootTimeoutError,
    ImageProvisionError,
    InstanceNotFoundError,
    InvalidStateTransitionError,
    PortExhaustionError,
    ProcessLaunchError,
    ResourceAllocationError,
)
from qemu_testbed.lifecycle import (
    InstanceController,
    cleanup_orphans,
    instance_status,
    list_instances,
    smoke_test_instance,
    stop_instance,
    stop_instances,
)
from qemu_testbed.monitor import ControlChannel
from qemu_testbed.platform_utils import AttachedProcess
from qemu_testbed.port_forward import PortAllocator
from qemu_testbed.vm_types import InstanceState

ControllerFactory = Callable[..., InstanceController]


@pytest.fixture
async def make_controller(
    make_config: Callable[..., OrchestratorConfig],
) -> AsyncIterator[ControllerFactory]:
    """Factory for controllers; every controller is stopped after the test."""
    controllers: list[InstanceController] = []

    def _make(
        behaviour: str = "ready",
        *,
        port_allocator: PortAllocator | None = None,
        **overrides: object,
    ) -> InstanceController:
        controller = InstanceController(make_config(behaviour, **overrides), port_allocator=port_allocator)
        controllers.append(controller)
        return controller

    yield _make
    for controller in controllers:
        await controller.stop()


def process_gone(pid: int) -> bool:
    return AttachedProcess(pid).returncode is not None


async def finished_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = await asyncio.create_subprocess_exec("true")
    await proc.wait()
    return proc.pid


# ============================================================================
# Start / stop
# ============================================================================


class TestStartStop:
    """Tests for InstanceController.start() and stop()."""

    async def test_start_reaches_ready(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        report = await controller.start(memory_mb=256, cpus=1)

        assert controller.state is InstanceState.READY
        assert report.ready_marker == "USBIP_CLIENT_READY"
        assert report.vhci_module_loaded is True
        assert report.usbip_version == "usbip (usbip-utils 2.0)"

        assert controller.instance is not None
        paths = controller.instance.paths
        assert paths.overlay.exists()
        pid = int(paths.pid_file.read_text())
        assert pid == controller.instance.process.pid  # type: ignore[union-attr]
        assert not process_gone(pid)

        allocation = controller.allocation
        assert allocation is not None
        assert (allocation.memory_mb, allocation.cpus) == (256, 1)
        start, end = controller.config.port_range_start, controller.config.port_range_end
        assert all(start <= port <= end for port in allocation.ports)
        assert allocation.control_port != allocation.data_port

    async def test_stop_releases_everything_but_console_log(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.start()
        assert controller.instance is not None
        paths = controller.instance.paths
        pid = int(paths.pid_file.read_text())

        await controller.stop()

        assert controller.state is InstanceState.STOPPED
        assert process_gone(pid)
        assert not paths.overlay.exists()
        assert not paths.monitor_socket.exists()
        assert not paths.pid_file.exists()
        assert paths.console_log.exists()
        assert controller.port_allocator.reserved == frozenset()

    async def test_stop_is_idempotent(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.start()
        await controller.stop()
        await controller.stop()
        assert controller.state is InstanceState.STOPPED

    async def test_stop_interrupted_during_power_down(self, make_controller: ControllerFactory) -> None:
        """Cancelling stop() mid power-down still releases the instance."""
        controller = make_controller("ready", shutdown_timeout_seconds=30)
        await controller.start()
        assert controller.instance is not None
        paths = controller.instance.paths
        pid = int(paths.pid_file.read_text())

        with patch.object(ControlChannel, "powerdown", AsyncMock(return_value=None)):
            task = asyncio.create_task(controller.stop())
            await asyncio.sleep(0.3)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert controller.state is InstanceState.FAILED
        assert process_gone(pid)
        assert not paths.pid_file.exists()
        assert not paths.overlay.exists()
        assert controller.port_allocator.reserved == frozenset()
        assert controller.cleanup is not None
        assert controller.cleanup.diagnostics_paths

        await controller.stop()
        assert controller.state is InstanceState.FAILED

    async def test_concurrent_stops(self, make_controller: ControllerFactory) -> None:
        """A stop() issued while another is in progress returns without error."""
        controller = make_controller("ready")
        await controller.start()

        await asyncio.gather(controller.stop(), controller.stop())

        assert controller.state is InstanceState.STOPPED

    async def test_stop_before_start_is_noop(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.stop()
        assert controller.state is InstanceState.INIT

    async def test_controller_is_single_use(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.start()
        with pytest.raises(InvalidStateTransitionError):
            await controller.start()

    async def test_login_prompt_accepted(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("login")
        report = await controller.start()
        assert report.login_prompt_only is True
        assert controller.state is InstanceState.READY

    async def test_concurrent_instances_get_distinct_ids_and_ports(
        self,
        make_controller: ControllerFactory,
    ) -> None:
        allocator = PortAllocator()
        first = make_controller("ready", port_allocator=allocator)
        second = make_controller("ready", port_allocator=allocator)

        await asyncio.gather(first.start(), second.start())

        assert first.instance_id != second.instance_id
        assert first.allocation is not None
        assert second.allocation is not None
        assert not set(first.allocation.ports) & set(second.allocation.ports)

    async def test_default_controllers_share_port_reservations(self, make_controller: ControllerFactory) -> None:
        first = make_controller("ready")
        second = make_controller("ready")
        assert first.port_allocator is second.port_allocator

        await asyncio.gather(first.start(), second.start())

        assert first.allocation is not None
        assert second.allocation is not None
        assert not set(first.allocation.ports) & set(second.allocation.ports)


# ============================================================================
# Failures and retries
# ============================================================================


class TestFailures:
    """Failure paths: bounded retries, FAILED state, nothing left behind."""

    async def test_boot_timeout_retried_then_failed(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("hang", boot_timeout_seconds=0.3)

        with pytest.raises(BootTimeoutError) as exc_info:
            await controller.start()

        assert controller.state is InstanceState.FAILED
        assert controller.instance is not None
        assert controller.instance.attempts == 2
        paths = controller.instance.paths
        assert Path(exc_info.value.diagnostics_path or "").exists()
        assert len(controller.cleanup.diagnostics_paths) >= 2  # type: ignore[union-attr]
        assert not paths.pid_file.exists()
        assert not paths.overlay.exists()
        assert controller.port_allocator.reserved == frozenset()

    async def test_single_attempt_when_retries_is_one(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("hang", boot_timeout_seconds=0.2, max_boot_retries=1)
        with pytest.raises(BootTimeoutError):
            await controller.start()
        assert controller.instance is not None
        assert controller.instance.attempts == 1

    async def test_process_death_during_boot(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("die_during_boot")

        with pytest.raises(BootFailureError) as exc_info:
            await controller.start()

        assert "died" in exc_info.value.message
        assert controller.state is InstanceState.FAILED
        assert controller.instance is not None
        assert controller.instance.attempts == 2
        assert not controller.instance.paths.pid_file.exists()
        assert exc_info.value.diagnostics_path is not None

    async def test_kernel_panic(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("panic", max_boot_retries=1)
        with pytest.raises(BootFailureError) as exc_info:
            await controller.start()
        assert exc_info.value.pattern == "Kernel panic"

    async def test_bind_failure_on_launch(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("crash")
        # Depending on timing the exit is seen by the launcher or by the boot detector
        with pytest.raises((ProcessLaunchError, BootFailureError)) as exc_info:
            await controller.start()
        assert exc_info.value.bind_conflict is True
        assert controller.instance is not None
        assert controller.instance.attempts == 2
        assert controller.state is InstanceState.FAILED

    async def test_allocation_failure_not_retried(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready", host_total_memory_mb=300, host_available_memory_mb=300)

        with pytest.raises(ResourceAllocationError) as exc_info:
            await controller.start()

        assert controller.state is InstanceState.FAILED
        assert controller.instance is not None
        assert controller.instance.attempts == 0
        assert exc_info.value.diagnostics_path is not None

    async def test_port_exhaustion_not_retried(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready", port_allocator=PortAllocator(is_bound=lambda port: True))

        with pytest.raises(PortExhaustionError):
            await controller.start()

        assert controller.instance is not None
        assert controller.instance.attempts == 1
        assert controller.state is InstanceState.FAILED

    async def test_overlay_failure(
        self,
        make_controller: ControllerFactory,
        failing_qemu_img: Path,
    ) -> None:
        controller = make_controller("ready", qemu_img_bin=failing_qemu_img)

        with pytest.raises(ImageProvisionError) as exc_info:
            await controller.start()

        assert "Permission denied" in exc_info.value.stderr
        assert controller.state is InstanceState.FAILED
        assert controller.instance is not None
        assert controller.instance.process is None

    async def test_missing_base_image(self, make_controller: ControllerFactory, tmp_path: Path) -> None:
        controller = make_controller("ready", base_image=tmp_path / "absent.qcow2")
        with pytest.raises(ImageProvisionError, match="Base image not found"):
            await controller.start()
        assert controller.state is InstanceState.FAILED

    async def test_cancelled_start_is_torn_down(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("hang", boot_timeout_seconds=10)
        task = asyncio.create_task(controller.start())

        async with asyncio.timeout(5):
            while controller.state is not InstanceState.BOOTING:
                await asyncio.sleep(0.02)
        assert controller.instance is not None
        pid = int(controller.instance.paths.pid_file.read_text())

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.state is InstanceState.FAILED
        assert process_gone(pid)
        assert not controller.instance.paths.pid_file.exists()
        assert not controller.instance.paths.overlay.exists()


# ============================================================================
# Out-of-process operations
# ============================================================================


class TestDetachedInstances:
    """start --background style handoff, then status/test/stop by instance id."""

    async def test_detach_requires_ready(self, make_controller: ControllerFactory) -> None:
        with pytest.raises(InvalidStateTransitionError):
            make_controller("ready").detach()

    async def test_status_smoke_test_and_stop(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.start()
        assert controller.allocation is not None
        ports = controller.allocation.ports
        paths = controller.detach()
        config = controller.config
        pid = int(paths.pid_file.read_text())

        await controller.stop()  # no-op after detach
        assert not process_gone(pid)

        status = await instance_status(config, paths.instance_id)
        assert status.running is True
        assert status.pid == pid
        assert status.ports == ports
        assert status.ready is True
        assert status.usbip_version == "usbip (usbip-utils 2.0)"
        assert [s.instance_id for s in await list_instances(config)] == [paths.instance_id]

        # The fake hypervisor has no monitor socket and does not bind the forwarded ports
        checks = await smoke_test_instance(config, paths.instance_id)
        assert checks["process_running"] is True
        assert checks["console_log"] is True
        assert checks["monitor_socket"] is False
        assert checks["monitor_responds"] is False
        assert paths.console_log.read_text().splitlines()[-1].endswith(
            "TEST_COMPLETE: FAIL: process_running=ok, console_log=ok, monitor_socket=FAIL, "
            "monitor_responds=FAIL, ports_bound=FAIL"
        )

        assert await stop_instance(config, paths.instance_id) is True
        assert process_gone(pid)
        assert not paths.pid_file.exists()
        assert not paths.overlay.exists()
        assert paths.console_log.exists()

        with pytest.raises(InstanceNotFoundError):
            await instance_status(config, paths.instance_id)

    async def test_stop_instances(self, make_controller: ControllerFactory) -> None:
        allocator = PortAllocator()
        detached = []
        for _ in range(2):
            controller = make_controller("ready", port_allocator=allocator)
            await controller.start()
            detached.append(controller.detach())

        results = await stop_instances(controller.config)
        assert results == {paths.instance_id: True for paths in detached}
        assert await list_instances(controller.config) == []

    async def test_unknown_instance(self, config: OrchestratorConfig) -> None:
        with pytest.raises(InstanceNotFoundError):
            await stop_instance(config, "qemu-usbip-0-0")
        with pytest.raises(InstanceNotFoundError):
            await smoke_test_instance(config, "qemu-usbip-0-0")

    async def test_list_without_pid_dir(self, config: OrchestratorConfig) -> None:
        assert await list_instances(config) == []

    async def test_stale_pid_file(self, config: OrchestratorConfig) -> None:
        config.pid_dir.mkdir(parents=True)
        (config.pid_dir / "qemu-usbip-1-1.pid").write_text(f"{await finished_pid()}\n")

        status = await instance_status(config, "qemu-usbip-1-1")
        assert status.running is False
        assert status.ports == ()

        assert await stop_instance(config, "qemu-usbip-1-1") is True
        assert not (config.pid_dir / "qemu-usbip-1-1.pid").exists()

    async def test_recycled_pid_not_attached(self, config: OrchestratorConfig) -> None:
        """A live PID whose command line does not name the instance is treated as not running."""
        proc = await asyncio.create_subprocess_exec("sleep", "30")
        try:
            config.pid_dir.mkdir(parents=True)
            (config.pid_dir / "qemu-usbip-1-1.pid").write_text(f"{proc.pid}\n")
            status = await instance_status(config, "qemu-usbip-1-1")
            assert status.running is False
        finally:
            proc.kill()
            await proc.wait()


class TestCleanupOrphans:
    async def test_removes_stale_files_only(self, config: OrchestratorConfig) -> None:
        for directory in (config.pid_dir, config.work_dir, config.log_dir):
            directory.mkdir(parents=True)
        stale_pid = config.pid_dir / "qemu-usbip-1-1.pid"
        stale_pid.write_text(f"{await finished_pid()}\n")
        overlay = config.work_dir / "qemu-usbip-1-1-overlay.img"
        socket_file = config.work_dir / "qemu-usbip-2-2-monitor.sock"
        unrelated = config.work_dir / "notes.txt"
        console_log = config.log_dir / "qemu-usbip-1-1-console.log"
        for path in (overlay, socket_file, unrelated, console_log):
            path.write_text("x")

        removed = await cleanup_orphans(config)

        assert set(removed) == {stale_pid, overlay, socket_file}
        assert unrelated.exists()
        assert console_log.exists()

    async def test_keeps_live_instance_files(self, make_controller: ControllerFactory) -> None:
        controller = make_controller("ready")
        await controller.start()
        paths = controller.detach()

        assert await cleanup_orphans(controller.config) == []
        assert paths.overlay.exists()
        assert paths.pid_file.exists()

        await stop_instance(controller.config, paths.instance_id)

    async def test_nothing_to_do(self, config: OrchestratorConfig) -> None:
        assert await cleanup_orphans(config) == []
