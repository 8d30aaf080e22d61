"""Unit tests for BootReadinessDetector.

The console log is a real file that a background task appends to; the
hypervisor process and control channel are mocks.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from qemu_testbed.cleanup import CleanupManager
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.console_log import current_size
from qemu_testbed.exceptions import BootFailureError, BootTimeoutError
from qemu_testbed.instance import InstancePaths
from qemu_testbed.readiness import BootReadinessDetector

READY_LINE = "[2026-01-15 10:02:54.123] USBIP_CLIENT_READY: USB/IP client ready\n"


@pytest.fixture
def paths(config: OrchestratorConfig) -> InstancePaths:
    config.log_dir.mkdir(parents=True, exist_ok=True)
    config.work_dir.mkdir(parents=True, exist_ok=True)
    paths = InstancePaths.for_instance("qemu-usbip-1700000000-1", config)
    paths.console_log.write_text("QEMU Console Log - Instance: qemu-usbip-1700000000-1\n")
    return paths


@pytest.fixture
def make_detector(
    paths: InstancePaths,
    config: OrchestratorConfig,
    running_process: MagicMock,
    control_channel: MagicMock,
) -> Callable[..., BootReadinessDetector]:
    def _make(cfg: OrchestratorConfig = config, **kwargs: object) -> BootReadinessDetector:
        kwargs.setdefault("diagnostics", CleanupManager(paths, work_dir=cfg.work_dir))
        return BootReadinessDetector(
            paths.console_log,
            control_channel,
            running_process,
            cfg,
            context_id=paths.instance_id,
            **kwargs,  # type: ignore[arg-type]
        )

    return _make


def append_later(path: Path, text: str, delay: float) -> asyncio.Task[None]:
    async def _append() -> None:
        await asyncio.sleep(delay)
        with path.open("a") as f:
            f.write(text)

    return asyncio.create_task(_append())


# ============================================================================
# Ready paths
# ============================================================================


class TestReady:
    async def test_ready_marker_after_delay(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """Marker appended at t=0.3s with a 5s timeout: ready after >= 0.3s."""
        writer = append_later(paths.console_log, READY_LINE, 0.3)
        report = await make_detector().wait_for_ready(timeout=5)
        await writer

        assert report.ready_marker == "USBIP_CLIENT_READY"
        assert report.login_prompt_only is False
        assert 0.3 <= report.elapsed_seconds < 5

    async def test_sub_markers_recorded(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with paths.console_log.open("a") as f:
            f.write("[2026-01-15 10:02:50.000] VHCI_MODULE_LOADED: vhci-hcd\n")
            f.write("[2026-01-15 10:02:51.000] USBIP_VERSION: usbip (usbip-utils 2.0)\n")
            f.write("[2026-01-15 10:02:52.000] CLOUD_INIT_COMPLETE: done\n")

        report = await make_detector().wait_for_ready(timeout=2)
        assert report.ready_marker == "CLOUD_INIT_COMPLETE"
        assert report.vhci_module_loaded is True
        assert report.usbip_version == "usbip (usbip-utils 2.0)"

    async def test_login_prompt_only(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """Login prompt without a strong marker is accepted after the grace period."""
        with paths.console_log.open("a") as f:
            f.write("testbed login: \n")

        report = await make_detector().wait_for_ready(timeout=5)
        assert report.login_prompt_only is True
        assert report.ready_marker is None
        assert report.elapsed_seconds >= 0.2  # login_grace_seconds

    async def test_unterminated_login_prompt(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """getty leaves the cursor after `login: ` with no newline."""
        with paths.console_log.open("a") as f:
            f.write("testbed login: ")

        report = await make_detector().wait_for_ready(timeout=1.0)
        assert report.login_prompt_only is True
        assert report.ready_marker is None

    async def test_strong_marker_during_login_grace(
        self,
        paths: InstancePaths,
        make_config: Callable[..., OrchestratorConfig],
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with paths.console_log.open("a") as f:
            f.write("testbed login: \n")
        writer = append_later(paths.console_log, READY_LINE, 0.1)

        report = await make_detector(make_config(login_grace_seconds=2)).wait_for_ready(timeout=5)
        await writer
        assert report.ready_marker == "USBIP_CLIENT_READY"
        assert report.login_prompt_only is False

    async def test_stale_marker_before_offset_ignored(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """A ready marker from an earlier attempt does not count for this launch."""
        with paths.console_log.open("a") as f:
            f.write(READY_LINE)
        detector = make_detector(start_offset=await current_size(paths.console_log))

        with pytest.raises(BootTimeoutError):
            await detector.wait_for_ready(timeout=0.3)


# ============================================================================
# Stall nudge
# ============================================================================


class TestStallNudge:
    async def test_one_nudge_then_ready(
        self,
        paths: InstancePaths,
        control_channel: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """Unchanged log for 3 ticks: exactly one Enter, which unsticks the guest."""

        writers: list[asyncio.Task[None]] = []

        async def guest_wakes(key: str) -> bool:
            writers.append(append_later(paths.console_log, READY_LINE, 0.2))
            return True

        control_channel.send_key = AsyncMock(side_effect=guest_wakes)
        report = await make_detector().wait_for_ready(timeout=5)
        await asyncio.gather(*writers)

        control_channel.send_key.assert_awaited_once_with("ret")
        assert report.nudges_sent == 1
        assert report.ready_marker == "USBIP_CLIENT_READY"

    async def test_no_second_nudge_without_new_output(
        self,
        control_channel: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with pytest.raises(BootTimeoutError) as exc_info:
            await make_detector().wait_for_ready(timeout=0.8)
        assert control_channel.send_key.await_count == 1
        assert exc_info.value.context["nudges"] == 1

    async def test_new_output_rearms_nudge(
        self,
        paths: InstancePaths,
        control_channel: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        writers: list[asyncio.Task[None]] = []

        async def guest_prints_but_stays_stuck(key: str) -> bool:
            writers.append(append_later(paths.console_log, "still waiting for input\n", 0.05))
            return True

        control_channel.send_key = AsyncMock(side_effect=guest_prints_but_stays_stuck)
        with pytest.raises(BootTimeoutError):
            await make_detector().wait_for_ready(timeout=1.0)
        await asyncio.gather(*writers)
        assert control_channel.send_key.await_count >= 2

    async def test_no_nudge_before_stall_grace(
        self,
        make_config: Callable[..., OrchestratorConfig],
        control_channel: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with pytest.raises(BootTimeoutError):
            await make_detector(make_config(stall_grace_seconds=30)).wait_for_ready(timeout=0.4)
        control_channel.send_key.assert_not_awaited()

    async def test_undelivered_nudge_not_counted(
        self,
        control_channel: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        control_channel.send_key = AsyncMock(return_value=False)
        with pytest.raises(BootTimeoutError) as exc_info:
            await make_detector().wait_for_ready(timeout=0.4)
        assert exc_info.value.context["nudges"] == 0


# ============================================================================
# Failures
# ============================================================================


class TestFailures:
    async def test_timeout_writes_diagnostics(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(BootTimeoutError) as exc_info:
            await make_detector().wait_for_ready(timeout=0.3)
        assert loop.time() - started >= 0.3

        artifact = Path(exc_info.value.diagnostics_path or "")
        assert artifact.parent == paths.log_dir
        assert artifact.name == f"diagnostics-{paths.instance_id}-1.log"
        assert "boot timeout" in artifact.read_text()

    async def test_fatal_pattern(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        writer = append_later(paths.console_log, "Out of memory: Killed process 1 (init)\n", 0.1)
        with pytest.raises(BootFailureError) as exc_info:
            await make_detector().wait_for_ready(timeout=5)
        await writer
        assert exc_info.value.pattern == "Out of memory"
        assert exc_info.value.bind_conflict is False
        assert exc_info.value.diagnostics_path is not None

    async def test_bind_failure_flagged(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with paths.console_log.open("a") as f:
            f.write("qemu-system-x86_64: Could not set up host forwarding rule 'tcp::2200-:22'\n")
        with pytest.raises(BootFailureError) as exc_info:
            await make_detector().wait_for_ready(timeout=5)
        assert exc_info.value.bind_conflict is True

    async def test_fatal_wins_over_ready_in_same_poll(
        self,
        paths: InstancePaths,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with paths.console_log.open("a") as f:
            f.write("Kernel panic - not syncing\n")
            f.write(READY_LINE)
        with pytest.raises(BootFailureError):
            await make_detector().wait_for_ready(timeout=5)

    async def test_process_died(
        self,
        paths: InstancePaths,
        running_process: MagicMock,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        """Hypervisor exits before any marker: failure names the death, artifact written."""
        running_process.is_running = AsyncMock(side_effect=[True, True, False])
        running_process.returncode = 1

        with pytest.raises(BootFailureError) as exc_info:
            await make_detector().wait_for_ready(timeout=5)

        assert "died" in exc_info.value.message
        assert exc_info.value.pattern is None
        assert exc_info.value.context["returncode"] == 1
        assert Path(exc_info.value.diagnostics_path or "").exists()

    async def test_without_diagnostics_manager(
        self,
        make_detector: Callable[..., BootReadinessDetector],
    ) -> None:
        with pytest.raises(BootTimeoutError) as exc_info:
            await make_detector(diagnostics=None).wait_for_ready(timeout=0.1)
        assert exc_info.value.diagnostics_path is None
