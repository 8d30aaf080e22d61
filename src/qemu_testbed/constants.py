"""Constants for qemu-testbed resource bounds, timing and console markers."""

from typing import Final

# ============================================================================
# Instance Memory and CPU Bounds
# ============================================================================

MIN_MEMORY_MB: Final[int] = 256
"""Minimum guest memory in MB. Hosts that cannot spare this much fail allocation."""

MAX_MEMORY_MB: Final[int] = 2048
"""Maximum guest memory in MB, regardless of host size."""

MIN_CPU: Final[int] = 1
"""Minimum guest vCPU count."""

MAX_CPU: Final[int] = 4
"""Maximum guest vCPU count."""

MEMORY_CEILING_RATIO: Final[float] = 0.75
"""Guest memory never exceeds this fraction of available host memory."""

DEFAULT_MEMORY_RATIO: Final[float] = 0.25
"""Fraction of available host memory used when no usable request is given."""

DEFAULT_CPU_RATIO: Final[float] = 0.5
"""Fraction of host cores used when no usable CPU request is given."""

HOST_RESERVED_CORES: Final[int] = 1
"""Cores always left to the host."""

# ============================================================================
# Host Capability Fallbacks (psutil unavailable)
# ============================================================================

FALLBACK_TOTAL_MEMORY_MB: Final[int] = 2048
"""Assumed total host memory when the platform cannot report it."""

FALLBACK_AVAILABLE_MEMORY_RATIO: Final[float] = 0.5
"""Assumed available fraction of FALLBACK_TOTAL_MEMORY_MB."""

FALLBACK_CPU_COUNT: Final[int] = 2
"""Assumed host core count when the platform cannot report it."""

# ============================================================================
# Port Forwarding
# ============================================================================

PORT_FORWARD_BIND_HOST: Final[str] = "127.0.0.1"
"""Host address forwarded ports bind to (localhost only)."""

PORT_RANGE_START: Final[int] = 2200
"""First host port considered for forwarding."""

PORT_RANGE_END: Final[int] = 2299
"""Last host port considered for forwarding (inclusive)."""

GUEST_CONTROL_PORT: Final[int] = 22
"""Guest SSH port (control plane)."""

GUEST_DATA_PORT: Final[int] = 3240
"""Guest USB/IP port (data plane)."""

# ============================================================================
# Boot Readiness
# ============================================================================

BOOT_TIMEOUT_SECONDS: Final[float] = 60.0
"""Maximum wait for a ready marker."""

BOOT_POLL_INTERVAL_SECONDS: Final[float] = 2.0
"""Console log polling interval during boot."""

STALL_TICKS: Final[int] = 3
"""Consecutive ticks without new console lines that count as a stall."""

STALL_GRACE_SECONDS: Final[float] = 30.0
"""Stall detection only starts after this much boot time."""

LOGIN_GRACE_SECONDS: Final[float] = 10.0
"""After a login prompt, wait this long for a strong ready marker."""

MAX_BOOT_RETRIES: Final[int] = 2
"""Total launch+boot attempts before an instance is declared failed."""

RETRY_DELAY_SECONDS: Final[float] = 5.0
"""Fixed delay between launch+boot attempts."""

# ============================================================================
# Launch and Shutdown
# ============================================================================

LAUNCH_GRACE_SECONDS: Final[float] = 1.0
"""Time a freshly spawned hypervisor must survive to count as launched."""

SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 30.0
"""Wait for graceful power-down before SIGTERM."""

TERM_GRACE_SECONDS: Final[float] = 2.0
"""Wait after SIGTERM before SIGKILL."""

KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait after SIGKILL before giving up on reaping."""

CONTROL_CHANNEL_TIMEOUT_SECONDS: Final[float] = 5.0
"""Connect/command timeout for the QMP control socket."""

QEMU_IMG_TIMEOUT_SECONDS: Final[float] = 30.0
"""Timeout for a single qemu-img invocation."""

MIN_FREE_DISK_MB: Final[int] = 1024
"""Preflight: free space required in the work directory."""

MIN_FREE_MEMORY_MB: Final[int] = 512
"""Preflight: free host memory required before launch."""

# ============================================================================
# Console Log
# ============================================================================

CONSOLE_LINE_PATTERN: Final[str] = r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3})\] ([A-Z][A-Z0-9_]*): (.*)$"
"""Structured console line: [YYYY-MM-DD HH:MM:SS.mmm] LEVEL: message."""

CONSOLE_TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
"""strftime format for the seconds part of structured timestamps."""

READY_MARKERS: Final[tuple[str, ...]] = ("USBIP_CLIENT_READY", "CLOUD_INIT_COMPLETE")
"""Strong readiness markers written by the guest."""

LOGIN_PROMPT_MARKER: Final[str] = "login:"
"""Weak readiness marker (getty reached)."""

VHCI_MODULE_MARKER: Final[str] = "VHCI_MODULE_LOADED"
"""Guest loaded the vhci-hcd kernel module."""

USBIP_VERSION_MARKER: Final[str] = "USBIP_VERSION"
"""Guest reported its usbip userspace version."""

TEST_COMPLETE_MARKER: Final[str] = "TEST_COMPLETE"
"""Written after a smoke test finishes."""

KNOWN_MARKERS: Final[tuple[str, ...]] = (
    "USBIP_CLIENT_READY",
    "CLOUD_INIT_COMPLETE",
    "VHCI_MODULE_LOADED",
    "USBIP_VERSION",
    "CONNECTING_TO_SERVER",
    "DEVICE_LIST_REQUEST",
    "DEVICE_IMPORT_REQUEST",
    "TEST_COMPLETE",
)
"""Structured levels the guest and orchestrator emit."""

BIND_CONFLICT_PATTERNS: Final[tuple[str, ...]] = (
    "Address already in use",
    "Could not set up host forwarding rule",
)
"""Console/stderr text meaning a forwarded port was taken at launch."""

FATAL_PATTERNS: Final[tuple[str, ...]] = (
    "Kernel panic",
    "Out of memory",
    "Permission denied",
    "No space left on device",
    *BIND_CONFLICT_PATTERNS,
)
"""Console text that fails a boot immediately."""

DIAGNOSTICS_TAIL_LINES: Final[int] = 20
"""Console lines included in a diagnostics artifact."""

INSTANCE_ID_PREFIX: Final[str] = "qemu-usbip"
"""Prefix for generated instance identifiers."""
