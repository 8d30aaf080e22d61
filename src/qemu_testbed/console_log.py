"""Console log format and typed tailing.

The console log is the only boot-progress contract between the guest and the
orchestrator. Structured lines look like:

    [2026-01-15 10:02:54.123] USBIP_CLIENT_READY: USB/IP client ready

Everything else (firmware, kernel, QEMU stderr) is free-form text that is
only scanned for fatal patterns and the login prompt.

ConsoleLogTailer reads the file incrementally from a byte offset and turns
each poll into typed events, so the readiness detector never scans raw text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from qemu_testbed import constants

_LINE_RE = re.compile(constants.CONSOLE_LINE_PATTERN)


@dataclass(frozen=True, slots=True)
class MarkerEvent:
    """A structured `[timestamp] LEVEL: message` line."""

    timestamp: str
    level: str
    message: str


@dataclass(frozen=True, slots=True)
class ReadyEvent:
    """Strong readiness marker seen."""

    marker: str


@dataclass(frozen=True, slots=True)
class LoginPromptEvent:
    """Login prompt seen (weak readiness)."""

    line: str


@dataclass(frozen=True, slots=True)
class FatalEvent:
    """Fatal pattern matched; boot cannot succeed."""

    pattern: str
    line: str

    @property
    def bind_conflict(self) -> bool:
        return self.pattern in constants.BIND_CONFLICT_PATTERNS


@dataclass(frozen=True, slots=True)
class LineCountEvent:
    """Total complete lines read so far (emitted once per poll)."""

    count: int


ConsoleEvent = MarkerEvent | ReadyEvent | LoginPromptEvent | FatalEvent | LineCountEvent


def parse_line(line: str) -> MarkerEvent | None:
    """Parse one structured console line, or None for free-form text."""
    match = _LINE_RE.match(line.rstrip("\r\n"))
    if match is None:
        return None
    timestamp, level, message = match.groups()
    return MarkerEvent(timestamp=timestamp, level=level, message=message)


def find_fatal_patterns(line: str, patterns: tuple[str, ...] = constants.FATAL_PATTERNS) -> list[str]:
    return [p for p in patterns if p in line]


def classify_line(line: str, fatal_patterns: tuple[str, ...] = constants.FATAL_PATTERNS) -> list[ConsoleEvent]:
    """Turn one complete console line into zero or more typed events."""
    events: list[ConsoleEvent] = []
    marker = parse_line(line)
    if marker is not None:
        events.append(marker)
        if marker.level in constants.READY_MARKERS:
            events.append(ReadyEvent(marker=marker.level))
    events.extend(FatalEvent(pattern=p, line=line) for p in find_fatal_patterns(line, fatal_patterns))
    if constants.LOGIN_PROMPT_MARKER in line:
        events.append(LoginPromptEvent(line=line))
    return events


class ConsoleLogTailer:
    """Incremental reader over an append-only console log.

    Keeps a byte offset and any trailing partial line between polls, so a
    line split across two writes is classified once, when complete. The one
    exception is the login prompt, which is reported while still partial.
    """

    def __init__(
        self,
        path: Path,
        *,
        start_offset: int = 0,
        fatal_patterns: tuple[str, ...] = constants.FATAL_PATTERNS,
    ) -> None:
        self.path = path
        self._offset = start_offset
        self._partial = b""
        self._prompt_reported = False
        self._line_count = 0
        self._fatal_patterns = fatal_patterns

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def line_count(self) -> int:
        return self._line_count

    async def poll(self) -> list[ConsoleEvent]:
        """Read whatever was appended since the last poll.

        A missing file is not an error (QEMU may not have opened it yet);
        the poll then reports an unchanged line count.
        """
        try:
            async with aiofiles.open(self.path, "rb") as f:
                await f.seek(self._offset)
                chunk = await f.read()
        except FileNotFoundError:
            chunk = b""

        events: list[ConsoleEvent] = []
        if chunk:
            self._offset += len(chunk)
            data = self._partial + chunk
            *complete, self._partial = data.split(b"\n")
            for raw in complete:
                line = raw.decode("utf-8", errors="replace").rstrip("\r")
                self._line_count += 1
                line_events = classify_line(line, self._fatal_patterns)
                if self._prompt_reported:
                    # Prompt already reported while this line was still partial
                    line_events = [e for e in line_events if not isinstance(e, LoginPromptEvent)]
                    self._prompt_reported = False
                events.extend(line_events)
            events.extend(self._scan_partial())
        events.append(LineCountEvent(count=self._line_count))
        return events

    def _scan_partial(self) -> list[ConsoleEvent]:
        """Report a login prompt on the unterminated last line.

        getty prints `host login: ` without a newline, so the prompt would
        otherwise never become a complete line. Reported once per line.
        """
        if self._prompt_reported or constants.LOGIN_PROMPT_MARKER.encode() not in self._partial:
            return []
        self._prompt_reported = True
        return [LoginPromptEvent(line=self._partial.decode("utf-8", errors="replace").rstrip("\r"))]


async def current_size(path: Path) -> int:
    """Byte size of the console log (0 if missing)."""
    try:
        stat = await aiofiles.os.stat(path)
    except FileNotFoundError:
        return 0
    return stat.st_size


def format_structured(level: str, message: str, now: datetime | None = None) -> str:
    """Render a structured console line (without newline)."""
    now = now or datetime.now()
    millis = now.microsecond // 1000
    return f"[{now.strftime(constants.CONSOLE_TIMESTAMP_FORMAT)}.{millis:03d}] {level}: {message}"


async def write_structured(path: Path, level: str, message: str) -> None:
    """Append one structured line to a console log."""
    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(format_structured(level, message) + "\n")


async def read_lines(path: Path) -> list[str]:
    """All lines of a console log (empty if missing)."""
    try:
        async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
            content = await f.read()
    except FileNotFoundError:
        return []
    return [line.rstrip("\r") for line in content.splitlines()]


async def tail_lines(path: Path, count: int = constants.DIAGNOSTICS_TAIL_LINES) -> list[str]:
    lines = await read_lines(path)
    return lines[-count:] if count else []


async def parse_console_log(path: Path, level: str | None = None) -> list[MarkerEvent]:
    """Structured lines of a console log, optionally filtered by level."""
    markers = [m for m in map(parse_line, await read_lines(path)) if m is not None]
    if level is not None:
        markers = [m for m in markers if m.level == level]
    return markers


async def latest_marker(path: Path, level: str) -> MarkerEvent | None:
    """Most recent structured line with the given level, if any."""
    markers = await parse_console_log(path, level)
    return markers[-1] if markers else None
