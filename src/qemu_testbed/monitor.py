"""Control channel to a running hypervisor.

QEMU exposes a QMP socket at `{instance_id}-monitor.sock`. The orchestrator
only needs a handful of human-monitor commands (`system_powerdown`,
`sendkey ret`, `info version`), which are delivered through QMP's
`human-monitor-command`. Each command opens a short-lived connection, so a
hypervisor restart between commands never leaves a stale client behind.
"""

from __future__ import annotations

import asyncio
import types
from pathlib import Path

from qemu.qmp import QMPClient  # type: ignore[import-untyped]

from qemu_testbed import constants
from qemu_testbed._logging import get_logger
from qemu_testbed.exceptions import ControlChannelError

logger = get_logger(__name__)


class QMPConnection:
    """Async QMP connection for one or more human-monitor commands.

    Usage:
        async with QMPConnection(socket_path) as qmp:
            await qmp.hmp("info version")
    """

    def __init__(self, socket_path: str | Path, timeout: float = constants.CONTROL_CHANNEL_TIMEOUT_SECONDS):
        self._socket_path = str(socket_path)
        self._timeout = timeout
        self._client: QMPClient | None = None

    async def __aenter__(self) -> QMPConnection:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Connect to the QMP socket.

        Raises:
            ControlChannelError: If connection fails or times out.
        """
        self._client = QMPClient("qemu-testbed")
        try:
            await asyncio.wait_for(self._client.connect(self._socket_path), timeout=self._timeout)
            logger.debug("Connected to QMP socket", extra={"socket": self._socket_path})
        except TimeoutError as e:
            await self._cleanup_client()
            msg = f"QMP connection timed out after {self._timeout}s"
            raise ControlChannelError(msg, {"socket": self._socket_path}) from e
        except Exception as e:
            # qemu.qmp wraps socket errors in its own ConnectError
            await self._cleanup_client()
            msg = f"QMP connection failed: {e}"
            raise ControlChannelError(msg, {"socket": self._socket_path}) from e

    async def disconnect(self) -> None:
        """Disconnect (safe to call multiple times or if never connected)."""
        await self._cleanup_client()

    async def _cleanup_client(self) -> None:
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception:  # noqa: BLE001 - Best effort cleanup
                logger.debug("QMP disconnect error (ignored)", exc_info=True)
            finally:
                self._client = None

    async def hmp(self, command_line: str) -> str:
        """Run one human-monitor command and return its text output.

        Raises:
            ControlChannelError: Not connected, timed out, or the command failed
        """
        if self._client is None:
            raise ControlChannelError("QMP client not connected", {"command": command_line})
        try:
            result = await asyncio.wait_for(
                self._client.execute("human-monitor-command", {"command-line": command_line}),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            msg = f"{command_line!r} timed out after {self._timeout}s"
            raise ControlChannelError(msg, {"command": command_line}) from e
        except Exception as e:
            msg = f"{command_line!r} failed: {e}"
            raise ControlChannelError(msg, {"command": command_line}) from e
        return result if isinstance(result, str) else ""


class ControlChannel:
    """Fixed command vocabulary over an instance's monitor socket.

    Critical commands (power-down, version query) raise ControlChannelError
    when the socket is absent or unresponsive. The wake nudge treats the
    same conditions as a soft failure and just reports False.
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = constants.CONTROL_CHANNEL_TIMEOUT_SECONDS,
        context_id: str = "",
    ) -> None:
        self.socket_path = socket_path
        self._timeout = timeout
        self._context_id = context_id

    def available(self) -> bool:
        return self.socket_path.is_socket()

    async def send_command(self, command_line: str) -> str:
        """Send one monitor command.

        Raises:
            ControlChannelError: Socket missing or command delivery failed
        """
        if not self.available():
            raise ControlChannelError(
                f"Monitor socket not available: {self.socket_path}",
                {"instance_id": self._context_id, "command": command_line},
            )
        async with QMPConnection(self.socket_path, timeout=self._timeout) as qmp:
            output = await qmp.hmp(command_line)
        logger.debug(
            "Monitor command sent",
            extra={"instance_id": self._context_id, "command": command_line},
        )
        return output

    async def powerdown(self) -> None:
        """Request graceful ACPI power-down.

        Raises:
            ControlChannelError: Socket missing or command delivery failed
        """
        await self.send_command("system_powerdown")

    async def query_version(self) -> str:
        """Hypervisor version string from `info version`."""
        return (await self.send_command("info version")).strip()

    async def send_key(self, key: str = "ret") -> bool:
        """Send a synthetic keystroke to unstick a guest waiting on input.

        Returns:
            True if delivered, False if the channel was unavailable
        """
        try:
            await self.send_command(f"sendkey {key}")
        except ControlChannelError as e:
            logger.warning(
                "Wake keystroke not delivered",
                extra={"instance_id": self._context_id, "error": e.message},
            )
            return False
        return True
