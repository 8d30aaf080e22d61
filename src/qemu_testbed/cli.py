"""Command-line interface for qemu-testbed.

Usage:
    qemu-testbed start                      # Boot an instance, Ctrl+C stops it
    qemu-testbed start --background         # Boot and leave it running
    qemu-testbed status                     # List instances
    qemu-testbed test INSTANCE_ID           # Smoke-test a running instance
    qemu-testbed stop INSTANCE_ID | --all   # Stop background instances
    qemu-testbed cleanup                    # Remove files of dead instances

Configuration comes from QEMU_TESTBED_* environment variables; see Settings.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Coroutine
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from qemu_testbed import __version__
from qemu_testbed._logging import configure_logging
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.exceptions import InstanceNotFoundError, TestbedError
from qemu_testbed.lifecycle import (
    InstanceController,
    cleanup_orphans,
    instance_status,
    list_instances,
    smoke_test_instance,
    stop_instance,
    stop_instances,
)
from qemu_testbed.models import BootReport, InstanceStatus
from qemu_testbed.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 3
EXIT_INTERRUPTED = 130  # 128 + SIGINT


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_report(controller: InstanceController, report: BootReport) -> str:
    """Human-readable summary of a started instance."""
    allocation = controller.allocation
    instance = controller.instance
    assert allocation is not None and instance is not None and instance.process is not None
    how = f"marker {report.ready_marker}" if report.ready_marker else "login prompt"
    lines = [
        click.style(f"✓ Instance ready: {instance.instance_id}", fg="green"),
        f"  PID:          {instance.process.pid}",
        f"  Memory:       {allocation.memory_mb} MB",
        f"  vCPUs:        {allocation.cpus}",
        f"  SSH port:     {allocation.control_port}",
        f"  USB/IP port:  {allocation.data_port}",
        f"  Boot time:    {report.elapsed_seconds:.1f}s ({how}, attempt {instance.attempts})",
        f"  Console log:  {instance.paths.console_log}",
    ]
    if report.usbip_version:
        lines.append(f"  USB/IP:       {report.usbip_version}")
    return "\n".join(lines)


def format_status(status: InstanceStatus) -> str:
    state = click.style("running", fg="green") if status.running else click.style("stopped", fg="red")
    ports = ",".join(str(p) for p in status.ports) or "-"
    ready = "ready" if status.ready else "not ready"
    return f"{status.instance_id}  pid={status.pid or '-'}  {state}  ports={ports}  {ready}"


def _run(coro: Coroutine[Any, Any, int]) -> int:
    """Run a command coroutine; SIGINT and SIGTERM cancel it so teardown runs."""

    async def _main() -> int:
        task = asyncio.current_task()
        assert task is not None
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)
        try:
            return await coro
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

    try:
        return asyncio.run(_main())
    except (asyncio.CancelledError, KeyboardInterrupt):
        click.echo("Interrupted", err=True)
        return EXIT_INTERRUPTED


async def run_start(
    config: OrchestratorConfig,
    memory: int | None,
    cpus: int | None,
    background: bool,
    timeout: float | None,
) -> int:
    """Start an instance and either hand it off or hold it until interrupted.

    Returns:
        Exit code to return from CLI
    """
    controller = InstanceController(config)
    try:
        report = await controller.start(memory, cpus, boot_timeout=timeout)
    except TestbedError as e:
        suggestions = []
        if e.diagnostics_path:
            suggestions.append(f"Diagnostics: {e.diagnostics_path}")
        if controller.instance is not None:
            suggestions.append(f"Console log: {controller.instance.paths.console_log}")
        click.echo(format_error(f"Instance failed to start ({type(e).__name__})", e.message, suggestions), err=True)
        return EXIT_FAILURE

    click.echo(format_report(controller, report))

    if background:
        paths = controller.detach()
        click.echo(f"\nRunning in background. Stop with: qemu-testbed stop {paths.instance_id}")
        return EXIT_SUCCESS

    instance = controller.instance
    assert instance is not None and instance.process is not None
    click.echo("\nPress Ctrl+C to stop the instance.", err=True)
    exit_code = EXIT_SUCCESS
    try:
        await instance.process.wait()
        click.echo(format_error("Instance exited", "The hypervisor process exited on its own."), err=True)
        exit_code = EXIT_FAILURE
    except asyncio.CancelledError:
        # Interrupt is the normal way to end a foreground run
        current = asyncio.current_task()
        if current is not None:
            current.uncancel()
        click.echo("Stopping instance...", err=True)
    finally:
        await controller.stop()
    return exit_code


async def run_status(config: OrchestratorConfig, instance_id: str | None, json_output: bool) -> int:
    if instance_id:
        try:
            statuses = [await instance_status(config, instance_id)]
        except InstanceNotFoundError as e:
            click.echo(format_error("Instance not found", e.message), err=True)
            return EXIT_NOT_FOUND
    else:
        statuses = await list_instances(config)

    if json_output:
        click.echo(json.dumps([s.model_dump(mode="json") for s in statuses], indent=2))
    elif not statuses:
        click.echo("No instances.")
    else:
        for status in statuses:
            click.echo(format_status(status))
    return EXIT_SUCCESS


async def run_stop(config: OrchestratorConfig, instance_id: str | None, stop_all: bool) -> int:
    if stop_all:
        results = await stop_instances(config)
        if not results:
            click.echo("No instances to stop.")
        for stopped_id, ok in results.items():
            click.echo(f"{stopped_id}: {'stopped' if ok else 'stopped with cleanup errors'}")
        return EXIT_SUCCESS if all(results.values()) else EXIT_FAILURE

    assert instance_id is not None
    try:
        ok = await stop_instance(config, instance_id)
    except InstanceNotFoundError as e:
        hint = ["List instances with: qemu-testbed status"]
        click.echo(format_error("Instance not found", e.message, hint), err=True)
        return EXIT_NOT_FOUND
    click.echo(f"{instance_id}: {'stopped' if ok else 'stopped with cleanup errors'}")
    return EXIT_SUCCESS if ok else EXIT_FAILURE


async def run_test(config: OrchestratorConfig, instance_id: str) -> int:
    try:
        checks = await smoke_test_instance(config, instance_id)
    except InstanceNotFoundError as e:
        click.echo(format_error("Instance not found", e.message), err=True)
        return EXIT_NOT_FOUND
    for name, ok in checks.items():
        mark = click.style("✓", fg="green") if ok else click.style("✗", fg="red")
        click.echo(f"{mark} {name}")
    return EXIT_SUCCESS if all(checks.values()) else EXIT_FAILURE


async def run_cleanup(config: OrchestratorConfig) -> int:
    removed = await cleanup_orphans(config)
    for path in removed:
        click.echo(f"removed {path}")
    click.echo(f"{len(removed)} orphaned file(s) removed.")
    return EXIT_SUCCESS


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-testbed")
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool) -> None:
    """Manage QEMU test instances for USB/IP client testing."""
    configure_logging(level="DEBUG" if verbose else "INFO", quiet=quiet)
    try:
        ctx.obj = OrchestratorConfig.from_settings(Settings())
    except ValidationError as exc:
        raise click.UsageError(f"Invalid configuration: {exc}") from exc


@main.command()
@click.option("-m", "--memory", type=click.IntRange(min=1), help="Memory in MB (default: host-derived)")
@click.option("-c", "--cpus", type=click.IntRange(min=1), help="vCPUs (default: host-derived)")
@click.option("-b", "--background", is_flag=True, help="Leave the instance running and exit")
@click.option("-t", "--timeout", type=click.FloatRange(min=0, min_open=True), help="Boot timeout per attempt (seconds)")
@click.pass_obj
def start(
    config: OrchestratorConfig,
    memory: int | None,
    cpus: int | None,
    background: bool,
    timeout: float | None,
) -> NoReturn:
    """Boot a test instance and wait until it is ready."""
    sys.exit(_run(run_start(config, memory, cpus, background, timeout)))


@main.command()
@click.argument("instance_id", required=False)
@click.option("--all", "stop_all", is_flag=True, help="Stop every instance in the pid directory")
@click.pass_obj
def stop(config: OrchestratorConfig, instance_id: str | None, stop_all: bool) -> NoReturn:
    """Stop a background instance."""
    if not instance_id and not stop_all:
        raise click.UsageError("Provide INSTANCE_ID or --all.")
    if instance_id and stop_all:
        raise click.UsageError("INSTANCE_ID and --all are mutually exclusive.")
    sys.exit(_run(run_stop(config, instance_id, stop_all)))


@main.command()
@click.argument("instance_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(config: OrchestratorConfig, instance_id: str | None, json_output: bool) -> NoReturn:
    """Show one instance, or all instances with a pid file."""
    sys.exit(_run(run_status(config, instance_id, json_output)))


@main.command()
@click.argument("instance_id")
@click.pass_obj
def test(config: OrchestratorConfig, instance_id: str) -> NoReturn:
    """Smoke-test a running instance."""
    sys.exit(_run(run_test(config, instance_id)))


@main.command()
@click.pass_obj
def cleanup(config: OrchestratorConfig) -> NoReturn:
    """Remove pid files, overlays and sockets of instances that are no longer running."""
    sys.exit(_run(run_cleanup(config)))


if __name__ == "__main__":
    main()
