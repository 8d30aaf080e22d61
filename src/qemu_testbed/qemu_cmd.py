"""QEMU command line builder for test instances.

One invocation encodes everything an instance needs: machine, CPU and
memory, the overlay as primary disk, user-mode networking with two host
port forwards, serial console appended to the console log, a QMP control
socket and a headless display.
"""

from __future__ import annotations

import re

from qemu_testbed import constants
from qemu_testbed.config import OrchestratorConfig
from qemu_testbed.instance import InstancePaths
from qemu_testbed.models import ResourceAllocation
from qemu_testbed.vm_types import AccelType

# Matches hostfwd=tcp:127.0.0.1:2200-:22 (host address optional)
_HOSTFWD_RE = re.compile(r"hostfwd=tcp:[^:]*:(\d+)-:(\d+)")


def build_qemu_cmd(
    config: OrchestratorConfig,
    allocation: ResourceAllocation,
    paths: InstancePaths,
    accel: AccelType,
) -> list[str]:
    """Build the hypervisor argv for one launch.

    Args:
        config: Orchestrator configuration (binary, machine type, forward host)
        allocation: Memory, vCPUs and the forwarded host port pair
        paths: Instance file layout (overlay, console log, monitor socket)
        accel: Accelerator; TCG cannot use `-cpu host`, so it gets `-cpu max`

    Returns:
        argv list, program first
    """
    host = config.forward_host
    netdev = (
        "user,id=net0,"
        f"hostfwd=tcp:{host}:{allocation.control_port}-:{constants.GUEST_CONTROL_PORT},"
        f"hostfwd=tcp:{host}:{allocation.data_port}-:{constants.GUEST_DATA_PORT}"
    )
    accel_opt = "tcg,thread=multi" if accel is AccelType.TCG else accel.value

    qemu_args = [str(config.qemu_bin)]

    # Name shows up in ps output; out-of-process stop/status match on it
    qemu_args.extend(["-name", f"guest={paths.instance_id}"])

    qemu_args.extend(
        [
            "-machine",
            config.machine,
            "-accel",
            accel_opt,
            "-cpu",
            "host" if accel.is_hardware else "max",
            "-smp",
            str(allocation.cpus),
            "-m",
            f"{allocation.memory_mb}M",
        ]
    )

    # Primary disk: the per-instance overlay, never the base image
    qemu_args.extend(["-drive", f"file={paths.overlay},format=qcow2,if=virtio"])

    qemu_args.extend(["-netdev", netdev, "-device", "virtio-net-pci,netdev=net0"])

    # Serial console appended to the console log; append=on keeps the
    # orchestrator's header and earlier attempts' output
    qemu_args.extend(
        [
            "-chardev",
            f"file,id=console0,path={paths.console_log},append=on",
            "-serial",
            "chardev:console0",
        ]
    )

    # QMP control socket
    # server=on: QEMU creates the listening socket; wait=off: boot without a client
    qemu_args.extend(["-qmp", f"unix:{paths.monitor_socket},server=on,wait=off"])

    qemu_args.extend(
        [
            "-display",
            "none",
            "-nodefaults",
            "-no-user-config",
            "-rtc",
            "base=utc,clock=host",
            "-boot",
            "order=c",
        ]
    )
    return qemu_args


def parse_forwarded_ports(cmdline: list[str]) -> tuple[int, ...]:
    """Recover forwarded host ports from a hypervisor command line."""
    ports: list[int] = []
    for arg in cmdline:
        ports.extend(int(host_port) for host_port, _guest in _HOSTFWD_RE.findall(arg))
    return tuple(ports)
