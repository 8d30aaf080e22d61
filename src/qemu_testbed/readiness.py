"""Boot readiness detection from the guest console log.

The detector polls the console log on a fixed interval and decides, per
tick, between four outcomes: keep waiting, ready, failed, timed out.

Per tick, in order:
1. Hypervisor process liveness (dead means the boot failed)
2. Fatal console patterns (kernel panic, OOM, bind failures, ...)
3. Strong ready markers (USBIP_CLIENT_READY, CLOUD_INIT_COMPLETE)
4. Login prompt: weak readiness, accepted after a short grace period
   unless a strong marker shows up first
5. Stall: no new console output for several ticks past the stall grace
   period sends one Enter keystroke over the control channel

Every failure writes a diagnostics artifact before raising; the artifact
path travels in the exception context.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.console_log import (
    ConsoleLogTailer,
    FatalEvent,
    LineCountEvent,
    LoginPromptEvent,
    MarkerEvent,
    ReadyEvent,
)
from qemu_testbed.exceptions import BootFailureError, BootTimeoutError, TestbedError
from qemu_testbed.models import BootReport
from qemu_testbed.monitor import ControlChannel
from qemu_testbed.platform_utils import AttachedProcess, ProcessWrapper
from qemu_testbed.ticker import Ticker

if TYPE_CHECKING:
    from qemu_testbed.cleanup import CleanupManager

logger = get_logger(__name__)


class BootReadinessDetector:
    """Waits for one launch of an instance to become usable."""

    def __init__(
        self,
        console_log: Path,
        control_channel: ControlChannel,
        process: ProcessWrapper | AttachedProcess,
        config: OrchestratorConfig,
        *,
        diagnostics: CleanupManager | None = None,
        start_offset: int = 0,
        context_id: str = "",
    ) -> None:
        """Create a detector.

        Args:
            console_log: Console log the guest writes to
            control_channel: Used for the stall nudge only
            process: Hypervisor process of this launch
            config: Poll interval, stall and login grace settings
            diagnostics: Writes the artifact on failure (None skips it)
            start_offset: Byte offset where this launch's output begins;
                markers left by earlier attempts are ignored
            context_id: Instance id for logging
        """
        self._tailer = ConsoleLogTailer(console_log, start_offset=start_offset)
        self._channel = control_channel
        self._process = process
        self._config = config
        self._diagnostics = diagnostics
        self._context_id = context_id

        self._nudges = 0
        self._vhci_loaded = False
        self._usbip_version: str | None = None

    async def wait_for_ready(self, timeout: float | None = None) -> BootReport:
        """Poll until the guest is ready.

        Args:
            timeout: Seconds to wait (default: config.boot_timeout_seconds)

        Returns:
            BootReport for the successful boot

        Raises:
            BootFailureError: Process died or a fatal pattern appeared
            BootTimeoutError: No readiness within the timeout
        """
        timeout = self._config.boot_timeout_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        ticker = Ticker(self._config.poll_interval_seconds)

        login_seen_at: float | None = None
        last_count: int | None = None
        unchanged_ticks = 0
        nudged = False

        logger.info(
            "Waiting for boot readiness",
            extra={"instance_id": self._context_id, "timeout": timeout},
        )

        while True:
            elapsed = loop.time() - started

            if not await self._process.is_running():
                await self._fail_process_died(elapsed)

            events = await self._tailer.poll()

            ready_marker: str | None = None
            fatal = next((e for e in events if isinstance(e, FatalEvent)), None)
            if fatal is not None:
                await self._fail(
                    BootFailureError(
                        f"Fatal console pattern: {fatal.pattern}",
                        context={"instance_id": self._context_id, "line": fatal.line, "elapsed": round(elapsed, 2)},
                        pattern=fatal.pattern,
                        bind_conflict=fatal.bind_conflict,
                    ),
                    reason=f"fatal console pattern: {fatal.pattern}",
                )

            for event in events:
                match event:
                    case MarkerEvent(level=constants.VHCI_MODULE_MARKER):
                        self._vhci_loaded = True
                    case MarkerEvent(level=constants.USBIP_VERSION_MARKER, message=message):
                        self._usbip_version = message
                    case ReadyEvent(marker=marker) if ready_marker is None:
                        ready_marker = marker
                    case LoginPromptEvent() if login_seen_at is None:
                        login_seen_at = elapsed
                        logger.info(
                            "Login prompt seen, waiting for ready marker",
                            extra={"instance_id": self._context_id, "grace": self._config.login_grace_seconds},
                        )
                    case LineCountEvent(count=count):
                        if count != last_count:
                            last_count = count
                            unchanged_ticks = 0
                            nudged = False
                        else:
                            unchanged_ticks += 1

            if ready_marker is not None:
                return self._report(loop.time() - started, ready_marker=ready_marker)

            if login_seen_at is not None and elapsed - login_seen_at >= self._config.login_grace_seconds:
                return self._report(loop.time() - started, login_prompt_only=True)

            if (
                not nudged
                and unchanged_ticks >= self._config.stall_ticks
                and elapsed >= self._config.stall_grace_seconds
            ):
                logger.warning(
                    "Console output stalled, sending Enter",
                    extra={"instance_id": self._context_id, "elapsed": round(elapsed, 2), "lines": last_count},
                )
                if await self._channel.send_key("ret"):
                    self._nudges += 1
                nudged = True
                unchanged_ticks = 0

            if elapsed >= timeout:
                if login_seen_at is not None:
                    return self._report(loop.time() - started, login_prompt_only=True)
                await self._fail(
                    BootTimeoutError(
                        f"No ready marker after {timeout}s",
                        context={
                            "instance_id": self._context_id,
                            "timeout": timeout,
                            "lines": self._tailer.line_count,
                            "nudges": self._nudges,
                        },
                    ),
                    reason="boot timeout",
                )

            remaining = timeout - elapsed
            if login_seen_at is not None:
                remaining = min(remaining, self._config.login_grace_seconds - (elapsed - login_seen_at))
            await ticker.wait(timeout=remaining)

    def _report(
        self,
        elapsed: float,
        *,
        ready_marker: str | None = None,
        login_prompt_only: bool = False,
    ) -> BootReport:
        report = BootReport(
            elapsed_seconds=round(elapsed, 3),
            ready_marker=ready_marker,
            login_prompt_only=login_prompt_only,
            nudges_sent=self._nudges,
            vhci_module_loaded=self._vhci_loaded,
            usbip_version=self._usbip_version,
        )
        logger.info(
            "Instance ready",
            extra={"instance_id": self._context_id, **report.model_dump()},
        )
        return report

    async def _fail_process_died(self, elapsed: float) -> NoReturn:
        # Drain what the process wrote before exiting; a bind failure is retried with new ports
        events = await self._tailer.poll()
        fatal = next((e for e in events if isinstance(e, FatalEvent)), None)
        await self._fail(
            BootFailureError(
                "Hypervisor process died during boot",
                context={
                    "instance_id": self._context_id,
                    "returncode": self._process.returncode,
                    "elapsed": round(elapsed, 2),
                    "last_fatal_line": fatal.line if fatal else None,
                },
                pattern=fatal.pattern if fatal else None,
                bind_conflict=fatal.bind_conflict if fatal else False,
            ),
            reason="process died",
        )

    async def _fail(self, error: TestbedError, *, reason: str) -> NoReturn:
        logger.error(error.message, extra={"instance_id": self._context_id, "reason": reason})
        if self._diagnostics is not None:
            path = await self._diagnostics.snapshot_diagnostics(reason, error)
            if path is not None:
                error.context["diagnostics_path"] = str(path)
        raise error
