from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncIterator

from coldstart.backend.base import LineSplitter, LogSource, RuntimeAdapter, StartedUnit
from coldstart.core.logging import get_logger
from coldstart.shared import SignalKind, SpawnFailure, StopTimeout
from coldstart.supervisor.models import BackendConfig

logger = get_logger(__name__)

_SIGNALS: dict[str, signal.Signals] = {
    "interrupt": signal.SIGINT,
    "terminate": signal.SIGTERM,
    "kill": signal.SIGKILL,
}
_READ_CHUNK_BYTES = 64 * 1024


async def _iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield complete lines from a pipe without the StreamReader line limit."""
    splitter = LineSplitter()
    while True:
        chunk = await reader.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        for line in splitter.feed(chunk):
            yield line
    for line in splitter.flush():
        yield line


class ProcessRuntimeAdapter(RuntimeAdapter):
    """Runs the backend as a local child process in its own process group."""

    kind = "process"
    graceful_signal: SignalKind = "interrupt"

    def __init__(self, host: str = "127.0.0.1") -> None:
        self._host = host
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def _build_environment(self, config: BackendConfig, port: int) -> dict[str, str]:
        environment = dict(os.environ)
        environment.update(config.env)
        environment["PORT"] = str(port)
        return environment

    async def start(self, config: BackendConfig, port: int) -> StartedUnit:
        command = [str(config.command), *config.args]
        cwd = config.app_path or None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=self._build_environment(config, port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group so signals reach grandchildren (e.g. sh -c)
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SpawnFailure(
                f"Backend command not found: {command[0]} ({exc})"
            ) from exc
        except OSError as exc:
            raise SpawnFailure(f"Failed to launch backend {command[0]}: {exc}") from exc

        identity = str(process.pid)
        self._processes[identity] = process
        logger.info(
            "Launched process %s for route %s on port %s: %s",
            identity,
            config.name,
            port,
            " ".join(command),
        )
        return StartedUnit(identity=identity, host=self._host, port=port)

    async def signal(self, identity: str, kind: SignalKind) -> None:
        process = self._processes.get(identity)
        if process is None or process.returncode is not None:
            return
        signum = _SIGNALS[kind]
        try:
            os.killpg(os.getpgid(process.pid), signum)
        except (ProcessLookupError, OSError):
            try:
                process.send_signal(signum)
            except ProcessLookupError:
                pass

    async def wait_exit(self, identity: str, timeout: float) -> None:
        process = self._processes.get(identity)
        if process is None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StopTimeout(identity, timeout) from exc

    async def cleanup(self, identity: str) -> None:
        process = self._processes.pop(identity, None)
        if process is None or process.returncode is not None:
            return
        # Still alive after the stop sequence; do not leave a stray group behind.
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, OSError):
            pass

    async def is_running(self, identity: str) -> bool:
        process = self._processes.get(identity)
        return process is not None and process.returncode is None

    def log_sources(self, identity: str) -> list[LogSource]:
        process = self._processes.get(identity)
        if process is None:
            return []
        sources: list[LogSource] = []
        if process.stdout is not None:
            sources.append(("stdout", _iter_lines(process.stdout)))
        if process.stderr is not None:
            sources.append(("stderr", _iter_lines(process.stderr)))
        return sources
