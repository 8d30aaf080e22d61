"""Exception hierarchy for qemu-testbed.

All exceptions inherit from TestbedError base class.

Hierarchy:
    TestbedError (base)
    ├── TransientError (retryable marker base)
    │   ├── ImageProvisionError       ← overlay creation/verification failed
    │   ├── ProcessLaunchError        ← preflight failure, crash on start, bind conflict
    │   ├── BootTimeoutError          ← no ready marker within timeout
    │   └── BootFailureError          ← fatal console pattern or process death
    ├── PermanentError (non-retryable marker base)
    │   ├── ResourceAllocationError   ← host below absolute minimums
    │   ├── PortExhaustionError       ← no free port pair in range
    │   ├── InvalidStateTransitionError
    │   └── InstanceNotFoundError     ← no pid file for an instance id
    └── ControlChannelError           ← monitor socket absent or command failed

Launch, boot and provisioning errors are retried a bounded number of times.
Allocation and port errors abort immediately. ControlChannelError never fails
an instance; callers fall back to signals.
"""

from __future__ import annotations

from typing import Any


class TestbedError(Exception):
    """Base exception for all testbed errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging.
            Failure paths add ``diagnostics_path`` once an artifact is written.
    """

    __test__ = False  # not a pytest test class despite the name

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def diagnostics_path(self) -> str | None:
        """Path of the diagnostics artifact written for this failure, if any."""
        return self.context.get("diagnostics_path")


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(TestbedError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(TestbedError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Transient Errors (retryable)
# =============================================================================


class ImageProvisionError(TransientError):
    """Overlay creation or verification failed.

    Attributes:
        stderr: Standard error output from qemu-img (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class ProcessLaunchError(TransientError):
    """Hypervisor failed preflight checks or exited right after start.

    Attributes:
        bind_conflict: True when a forwarded host port was taken between
            allocation and launch. The lifecycle controller re-runs port
            allocation before the next attempt.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, bind_conflict: bool = False):
        super().__init__(message, context)
        self.bind_conflict = bind_conflict


class BootTimeoutError(TransientError):
    """No readiness marker appeared within the boot timeout."""


class BootFailureError(TransientError):
    """Boot failed: fatal console pattern or hypervisor process died.

    Attributes:
        pattern: Fatal pattern that matched, None for process death
        bind_conflict: True when the fatal pattern is a port-forwarding bind failure
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        pattern: str | None = None,
        bind_conflict: bool = False,
    ):
        super().__init__(message, context)
        self.pattern = pattern
        self.bind_conflict = bind_conflict


# =============================================================================
# Permanent Errors (non-retryable)
# =============================================================================


class ResourceAllocationError(PermanentError):
    """Host cannot satisfy the absolute memory/CPU minimums.

    Structural host or configuration problem; never retried.
    """


class PortExhaustionError(PermanentError):
    """No free pair of forwardable ports in the configured range."""


class InvalidStateTransitionError(PermanentError):
    """Lifecycle transition not allowed from the current state."""


class InstanceNotFoundError(PermanentError):
    """No pid file exists for the requested instance id."""


# =============================================================================
# Control Channel
# =============================================================================


class ControlChannelError(TestbedError):
    """Monitor socket missing, unreachable, or a command failed.

    Triggers the signal-based shutdown fallback; never marks an instance failed.
    """
