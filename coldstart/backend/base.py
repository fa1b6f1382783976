from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from coldstart.shared import SignalKind
from coldstart.supervisor.models import BackendConfig

LogSource = tuple[str, AsyncIterator[bytes]]

MAX_LINE_BYTES = 64 * 1024


class LineSplitter:
    """Cuts a byte stream into lines.

    Output without a newline is flushed as a line once it reaches
    ``max_line`` bytes, so a runaway writer cannot grow the buffer.
    """

    def __init__(self, max_line: int = MAX_LINE_BYTES) -> None:
        self.max_line = max_line
        self._pending = b""

    def _cut(self, line: bytes) -> list[bytes]:
        return [
            line[start : start + self.max_line]
            for start in range(0, len(line), self.max_line)
        ] or [line]

    def feed(self, chunk: bytes) -> list[bytes]:
        *complete, pending = (self._pending + chunk).split(b"\n")
        lines: list[bytes] = []
        for line in complete:
            lines.extend(self._cut(line))
        while len(pending) >= self.max_line:
            lines.append(pending[: self.max_line])
            pending = pending[self.max_line :]
        self._pending = pending
        return lines

    def flush(self) -> list[bytes]:
        pending, self._pending = self._pending, b""
        return [pending] if pending else []


@dataclass(frozen=True)
class StartedUnit:
    """A launched backend unit: its opaque identity and reachable address."""

    identity: str
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"http://{self.host}:{self.port}"


class RuntimeAdapter(ABC):
    """Start, signal, and reap one kind of backend unit.

    Adapters hold no locks over supervisor state. The supervisor serializes
    calls for a given identity.
    """

    kind: str = ""
    # Signal sent first when stopping; ``kill`` follows after the grace timeout.
    graceful_signal: SignalKind = "terminate"

    @abstractmethod
    async def start(self, config: BackendConfig, port: int) -> StartedUnit:
        """Launch a unit listening on ``port``.

        Raises:
            SpawnFailure: When the unit cannot be launched.
        """

    @abstractmethod
    async def signal(self, identity: str, kind: SignalKind) -> None:
        """Deliver a stop signal. Signalling an exited unit is a no-op."""

    @abstractmethod
    async def wait_exit(self, identity: str, timeout: float) -> None:
        """Wait for the unit to exit.

        Raises:
            StopTimeout: When the unit is still running after ``timeout``.
        """

    @abstractmethod
    async def cleanup(self, identity: str) -> None:
        """Release everything held for the unit. Safe to call more than once."""

    @abstractmethod
    async def is_running(self, identity: str) -> bool:
        ...

    @abstractmethod
    def log_sources(self, identity: str) -> list[LogSource]:
        """Named byte-line streams of the unit's output."""
