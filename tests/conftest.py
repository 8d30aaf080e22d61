"""Shared pytest fixtures for qemu-testbed tests.

End-to-end lifecycle tests run against fake `qemu-img` and hypervisor
shell scripts written into tmp_path, so no real QEMU or guest image is
needed. The fake hypervisor finds the console log in its own command line
(`-chardev file,id=console0,path=...`) and writes what a guest would.
"""

import socket
import stat
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.port_forward import _shared_allocators
from qemu_testbed.system_probes import _probe_cache

# ============================================================================
# Fake binaries
# ============================================================================

FAKE_QEMU_IMG = """#!/bin/sh
# create -f qcow2 -b BASE -F qcow2 OVERLAY | info --output=json IMAGE
case "$1" in
  create)
    printf '%s' "$5" > "$8"
    ;;
  info)
    base=$(cat "$3")
    printf '{"format": "qcow2", "backing-filename": "%s", "full-backing-filename": "%s"}\\n' "$base" "$base"
    ;;
  *)
    echo "unsupported: $1" >&2
    exit 1
    ;;
esac
"""

FAILING_QEMU_IMG = """#!/bin/sh
echo "qemu-img: Could not open backing file: Permission denied" >&2
exit 1
"""

_HYPERVISOR_PRELUDE = """#!/bin/sh
console=""
for arg in "$@"; do
  case "$arg" in
    file,id=console0,path=*)
      console="${arg#file,id=console0,path=}"
      console="${console%,append=on}"
      ;;
  esac
done
say() { echo "$1" >> "$console"; }
"""

# Keeps the script (and its -name guest=ID command line) alive until signalled
_HYPERVISOR_IDLE = """
sleep 30 &
child=$!
trap 'kill $child 2>/dev/null; exit 0' TERM INT
wait $child
"""

HYPERVISOR_BEHAVIOURS: dict[str, str] = {
    "ready": """
say "SeaBIOS (version fake)"
say "[2026-01-15 10:02:50.000] VHCI_MODULE_LOADED: vhci-hcd loaded"
say "[2026-01-15 10:02:51.000] USBIP_VERSION: usbip (usbip-utils 2.0)"
say "[2026-01-15 10:02:54.123] USBIP_CLIENT_READY: USB/IP client ready"
""",
    "login": """
say "Ubuntu 24.04 LTS testbed ttyS0"
printf '%s' "testbed login: " >> "$console"
""",
    "hang": """
say "Booting fake kernel"
""",
    "panic": """
say "Kernel panic - not syncing: VFS: Unable to mount root fs"
""",
    "crash": """
echo "qemu-system-x86_64: -netdev user: Could not set up host forwarding rule" >&2
exit 1
""",
    "die_during_boot": """
say "Booting fake kernel"
sleep 0.3
exit 1
""",
}


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def fake_qemu_img(bin_dir: Path) -> Path:
    return write_script(bin_dir / "qemu-img", FAKE_QEMU_IMG)


@pytest.fixture
def failing_qemu_img(bin_dir: Path) -> Path:
    return write_script(bin_dir / "qemu-img-failing", FAILING_QEMU_IMG)


@pytest.fixture
def fake_hypervisor(bin_dir: Path) -> Callable[[str], Path]:
    """Factory: fake_hypervisor("ready") -> path of an executable fake QEMU."""

    def _make(behaviour: str) -> Path:
        body = _HYPERVISOR_PRELUDE + HYPERVISOR_BEHAVIOURS[behaviour]
        if behaviour not in ("crash", "die_during_boot"):
            body += _HYPERVISOR_IDLE
        return write_script(bin_dir / f"qemu-{behaviour}", body)

    return _make


@pytest.fixture
def base_image(tmp_path: Path) -> Path:
    image = tmp_path / "images" / "usbip-client.qcow2"
    image.parent.mkdir(parents=True, exist_ok=True)
    image.write_bytes(b"QFI\xfb fake base image")
    return image


# ============================================================================
# Configuration
# ============================================================================


@pytest.fixture
def free_port_range() -> tuple[int, int]:
    """A 20-port range starting at an OS-chosen free port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        start = s.getsockname()[1]
    start = min(start, 65535 - 20)
    return start, start + 19


@pytest.fixture
def make_config(
    tmp_path: Path,
    fake_qemu_img: Path,
    fake_hypervisor: Callable[[str], Path],
    base_image: Path,
    free_port_range: tuple[int, int],
) -> Callable[..., OrchestratorConfig]:
    """Factory for fast-timing configs rooted in tmp_path.

    make_config(behaviour="hang", boot_timeout_seconds=0.3)
    """

    def _make(behaviour: str = "ready", **overrides: object) -> OrchestratorConfig:
        values: dict[str, object] = {
            "qemu_bin": fake_hypervisor(behaviour),
            "qemu_img_bin": fake_qemu_img,
            "base_image": base_image,
            "accel": "tcg",
            "work_dir": tmp_path / "work",
            "log_dir": tmp_path / "logs",
            "pid_dir": tmp_path / "pids",
            "boot_timeout_seconds": 5,
            "poll_interval_seconds": 0.05,
            "stall_ticks": 3,
            "stall_grace_seconds": 0,
            "login_grace_seconds": 0.2,
            "max_boot_retries": 2,
            "retry_delay_seconds": 0,
            "launch_grace_seconds": 0.1,
            "shutdown_timeout_seconds": 0.2,
            "term_grace_seconds": 1,
            "control_channel_timeout_seconds": 0.2,
            "port_range_start": free_port_range[0],
            "port_range_end": free_port_range[1],
            "host_total_memory_mb": 8192,
            "host_available_memory_mb": 4096,
            "host_cpu_count": 4,
            "min_free_disk_mb": 0,
            "min_free_memory_mb": 0,
        }
        values.update(overrides)
        return OrchestratorConfig(**values)

    return _make


@pytest.fixture
def config(make_config: Callable[..., OrchestratorConfig]) -> OrchestratorConfig:
    return make_config()


# ============================================================================
# Test doubles
# ============================================================================


@pytest.fixture
def running_process() -> MagicMock:
    """Stand-in for ProcessWrapper of a live hypervisor."""
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.is_running = AsyncMock(return_value=True)
    return proc


@pytest.fixture
def control_channel() -> MagicMock:
    channel = MagicMock()
    channel.send_key = AsyncMock(return_value=True)
    channel.powerdown = AsyncMock()
    channel.query_version = AsyncMock(return_value="9.0.0")
    return channel


@pytest.fixture(autouse=True)
def clear_process_caches() -> Iterator[None]:
    _probe_cache.clear()
    _shared_allocators.clear()
    yield
    _probe_cache.clear()
    _shared_allocators.clear()
