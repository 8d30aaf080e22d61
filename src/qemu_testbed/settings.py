"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_testbed import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QEMU_TESTBED_ prefix.
    Example: QEMU_TESTBED_BOOT_TIMEOUT_SECONDS=120

    Read exactly once, by the CLI, and turned into an OrchestratorConfig.
    Nothing else in the package reads the environment.
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_TESTBED_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # QEMU
    qemu_bin: Path = Path("qemu-system-x86_64")
    qemu_img_bin: Path = Path("qemu-img")
    base_image: Path = Path(".build/qemu/images/qemu-usbip-client.qcow2")
    machine: str = "q35"
    accel: Literal["auto", "kvm", "hvf", "tcg"] = "auto"

    # On-disk layout
    work_dir: Path = Path(".build/qemu")
    log_dir: Path = Path(".build/qemu/logs")
    pid_dir: Path = Path(".build/qemu/pids")

    # Boot
    boot_timeout_seconds: float = constants.BOOT_TIMEOUT_SECONDS
    poll_interval_seconds: float = constants.BOOT_POLL_INTERVAL_SECONDS
    max_boot_retries: int = constants.MAX_BOOT_RETRIES
    retry_delay_seconds: float = constants.RETRY_DELAY_SECONDS

    # Shutdown
    shutdown_timeout_seconds: float = constants.SHUTDOWN_TIMEOUT_SECONDS

    # Ports
    port_range_start: int = constants.PORT_RANGE_START
    port_range_end: int = constants.PORT_RANGE_END

    # Host resource overrides (None = auto-detect via psutil)
    # Useful in containers where psutil reports the whole host
    host_total_memory_mb: int | None = None
    host_available_memory_mb: int | None = None
    host_cpu_count: int | None = None

    # Preflight
    min_free_disk_mb: int = constants.MIN_FREE_DISK_MB
    min_free_memory_mb: int = constants.MIN_FREE_MEMORY_MB
