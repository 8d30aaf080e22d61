"""Orchestrator configuration for qemu-testbed.

OrchestratorConfig is built once at startup (usually from Settings) and passed
explicitly into every component. No component reads environment variables.

Example:
    ```python
    from qemu_testbed import InstanceController, OrchestratorConfig

    config = OrchestratorConfig(base_image=Path("images/client.qcow2"))
    controller = InstanceController(config)
    report = await controller.start(memory_mb=512)
    ...
    await controller.stop()
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from qemu_testbed import constants

if TYPE_CHECKING:
    from qemu_testbed.settings import Settings


class OrchestratorConfig(BaseModel):
    """Immutable configuration for instance orchestration.

    All fields have defaults suitable for a developer machine; CI runs
    usually shorten retry delays and raise boot timeouts.

    Attributes:
        qemu_bin: Hypervisor binary (qemu-system-x86_64 or compatible).
        qemu_img_bin: qemu-img binary used for overlays.
        base_image: Shared read-only qcow2 base image.
        machine: QEMU machine type. Default: q35.
        accel: Accelerator ("auto" probes kvm/hvf and falls back to tcg).
        work_dir: Overlays and monitor sockets live here.
        log_dir: Console logs and diagnostics artifacts live here.
        pid_dir: One {instance_id}.pid per launched instance.
        boot_timeout_seconds: Maximum wait for a ready marker.
        poll_interval_seconds: Console polling interval during boot and shutdown.
        stall_ticks: Unchanged-log ticks that count as a stall.
        stall_grace_seconds: Boot time before stall detection kicks in.
        login_grace_seconds: Wait for a strong marker after a login prompt.
        max_boot_retries: Total launch+boot attempts (also bounds overlay attempts).
        retry_delay_seconds: Fixed delay between attempts.
        launch_grace_seconds: Time a new hypervisor must survive.
        shutdown_timeout_seconds: Wait for graceful power-down.
        term_grace_seconds: Wait between SIGTERM and SIGKILL.
        control_channel_timeout_seconds: QMP connect/command timeout.
        port_range_start: First forwardable host port.
        port_range_end: Last forwardable host port (inclusive).
        forward_host: Address forwarded ports bind to.
        host_total_memory_mb: Override detected host memory.
        host_available_memory_mb: Override detected available memory.
        host_cpu_count: Override detected core count.
        min_free_disk_mb: Launch preflight disk floor.
        min_free_memory_mb: Launch preflight memory floor.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    # QEMU
    qemu_bin: Path = Field(default=Path("qemu-system-x86_64"), description="Hypervisor binary")
    qemu_img_bin: Path = Field(default=Path("qemu-img"), description="qemu-img binary")
    base_image: Path = Field(
        default=Path(".build/qemu/images/qemu-usbip-client.qcow2"),
        description="Shared read-only base image",
    )
    machine: str = Field(default="q35", description="QEMU machine type")
    accel: Literal["auto", "kvm", "hvf", "tcg"] = Field(default="auto", description="Accelerator selection")

    # Paths
    work_dir: Path = Field(default=Path(".build/qemu"), description="Overlay and socket directory")
    log_dir: Path = Field(default=Path(".build/qemu/logs"), description="Console log and diagnostics directory")
    pid_dir: Path = Field(default=Path(".build/qemu/pids"), description="PID file directory")

    # Boot readiness
    boot_timeout_seconds: float = Field(default=constants.BOOT_TIMEOUT_SECONDS, gt=0, le=3600)
    poll_interval_seconds: float = Field(default=constants.BOOT_POLL_INTERVAL_SECONDS, gt=0, le=60)
    stall_ticks: int = Field(default=constants.STALL_TICKS, ge=1, le=100)
    stall_grace_seconds: float = Field(default=constants.STALL_GRACE_SECONDS, ge=0)
    login_grace_seconds: float = Field(default=constants.LOGIN_GRACE_SECONDS, ge=0)

    # Retry
    max_boot_retries: int = Field(
        default=constants.MAX_BOOT_RETRIES,
        ge=1,
        le=10,
        description="Total launch+boot attempts before FAILED",
    )
    retry_delay_seconds: float = Field(default=constants.RETRY_DELAY_SECONDS, ge=0, le=300)

    # Launch / shutdown
    launch_grace_seconds: float = Field(default=constants.LAUNCH_GRACE_SECONDS, ge=0, le=60)
    shutdown_timeout_seconds: float = Field(default=constants.SHUTDOWN_TIMEOUT_SECONDS, ge=0, le=600)
    term_grace_seconds: float = Field(default=constants.TERM_GRACE_SECONDS, gt=0, le=60)
    control_channel_timeout_seconds: float = Field(default=constants.CONTROL_CHANNEL_TIMEOUT_SECONDS, gt=0, le=60)

    # Ports
    port_range_start: int = Field(default=constants.PORT_RANGE_START, ge=1024, le=65535)
    port_range_end: int = Field(default=constants.PORT_RANGE_END, ge=1024, le=65535)
    forward_host: str = Field(default=constants.PORT_FORWARD_BIND_HOST, description="Forwarded port bind address")

    # Host overrides (None = psutil)
    host_total_memory_mb: int | None = Field(default=None, gt=0)
    host_available_memory_mb: int | None = Field(default=None, gt=0)
    host_cpu_count: int | None = Field(default=None, gt=0)

    # Preflight
    min_free_disk_mb: int = Field(default=constants.MIN_FREE_DISK_MB, ge=0)
    min_free_memory_mb: int = Field(default=constants.MIN_FREE_MEMORY_MB, ge=0)

    @model_validator(mode="after")
    def _check_port_range(self) -> Self:
        if self.port_range_end <= self.port_range_start:
            raise ValueError(
                f"port_range_end ({self.port_range_end}) must be greater than "
                f"port_range_start ({self.port_range_start})"
            )
        return self

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> OrchestratorConfig:
        """Build a config from environment-derived Settings.

        Args:
            settings: Parsed Settings instance
            **overrides: Explicit values (e.g. CLI flags) that win over settings

        Returns:
            Frozen OrchestratorConfig
        """
        values: dict[str, object] = {
            name: getattr(settings, name) for name in cls.model_fields if name in type(settings).model_fields
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
