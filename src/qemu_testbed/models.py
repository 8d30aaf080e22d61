"""Data models for qemu-testbed."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True, slots=True)
class HostCapabilities:
    """Point-in-time host capacity, read once per orchestration run."""

    total_memory_mb: int
    available_memory_mb: int
    cpu_count: int
    source: str = "psutil"
    """Where the numbers came from: "psutil", "override" or "fallback"."""


@dataclass(frozen=True, slots=True)
class ResourceAllocation:
    """Memory, CPU and forwarded host ports granted to one instance."""

    memory_mb: int
    cpus: int
    control_port: int = 0
    """Host port forwarded to the guest SSH port."""
    data_port: int = 0
    """Host port forwarded to the guest USB/IP port."""

    def with_ports(self, control_port: int, data_port: int) -> ResourceAllocation:
        """Return a copy with a new port pair."""
        return dataclasses.replace(self, control_port=control_port, data_port=data_port)

    @property
    def ports(self) -> tuple[int, int]:
        return (self.control_port, self.data_port)


class BootReport(BaseModel):
    """Outcome of a successful boot readiness wait."""

    model_config = ConfigDict(frozen=True)

    elapsed_seconds: float = Field(ge=0, description="Time from detector start to readiness")
    ready_marker: str | None = Field(default=None, description="Strong marker that signalled readiness")
    login_prompt_only: bool = Field(default=False, description="Accepted on login prompt after the grace wait")
    nudges_sent: int = Field(default=0, ge=0, description="Synthetic keystrokes sent to unstick the guest")
    vhci_module_loaded: bool = Field(default=False, description="VHCI_MODULE_LOADED marker seen")
    usbip_version: str | None = Field(default=None, description="Message of the last USBIP_VERSION marker")


class InstanceStatus(BaseModel):
    """Out-of-process view of an instance, reconstructed from its pid file."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    pid: int | None = Field(description="PID from the pid file (None if unreadable)")
    running: bool
    pid_file: Path
    console_log: Path
    ports: tuple[int, ...] = Field(default=(), description="Forwarded host ports from the hypervisor command line")
    ready: bool = Field(default=False, description="Strong ready marker present in the console log")
    usbip_version: str | None = None
