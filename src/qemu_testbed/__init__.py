"""qemu-testbed: QEMU test VM orchestration for USB/IP client testing.

Boots disposable guest VMs from a shared read-only base image, forwards the
guest's SSH and USB/IP ports to free host ports, waits until the guest
reports readiness on its serial console, and tears everything down again.

Quick Start:
    ```python
    from pathlib import Path

    from qemu_testbed import InstanceController, OrchestratorConfig

    config = OrchestratorConfig(base_image=Path("images/usbip-client.qcow2"))
    controller = InstanceController(config)
    report = await controller.start(memory_mb=512)
    try:
        port = controller.allocation.data_port  # USB/IP on the host side
        ...
    finally:
        await controller.stop()
    ```

Each start attempt that fails leaves a diagnostics-{instance_id}-{n}.log next
to the console log; the raised error carries its path in
``error.context["diagnostics_path"]``.

Requirements:
    - QEMU with KVM (Linux) or HVF (macOS); falls back to TCG
    - qemu-img
    - Python 3.12+
"""

from qemu_testbed.cleanup import CleanupManager
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.exceptions import (
    BootFailureError,
    BootTimeoutError,
    ControlChannelError,
    ImageProvisionError,
    InstanceNotFoundError,
    InvalidStateTransitionError,
    PermanentError,
    PortExhaustionError,
    ProcessLaunchError,
    ResourceAllocationError,
    TestbedError,
    TransientError,
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
from qemu_testbed.models import BootReport, HostCapabilities, InstanceStatus, ResourceAllocation
from qemu_testbed.settings import Settings
from qemu_testbed.vm_types import InstanceState

__all__ = [
    "BootFailureError",
    "BootReport",
    "BootTimeoutError",
    "CleanupManager",
    "ControlChannelError",
    "HostCapabilities",
    "ImageProvisionError",
    "InstanceController",
    "InstanceNotFoundError",
    "InstanceState",
    "InstanceStatus",
    "InvalidStateTransitionError",
    "OrchestratorConfig",
    "PermanentError",
    "PortExhaustionError",
    "ProcessLaunchError",
    "ResourceAllocationError",
    "Settings",
    "TestbedError",
    "TransientError",
    "cleanup_orphans",
    "instance_status",
    "list_instances",
    "smoke_test_instance",
    "stop_instance",
    "stop_instances",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-testbed")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
