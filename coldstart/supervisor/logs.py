from __future__ import annotations

import asyncio
import contextlib
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Callable

from coldstart.backend.base import LogSource
from coldstart.core.logging import get_logger
from coldstart.shared import LogRotationFailure

logger = get_logger(__name__)

_STAMP_FORMAT = "%Y%m%dT%H%M%S.%fZ"
_DRAIN_TIMEOUT_SECONDS = 1.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LogManager:
    """Captures a backend unit's output into timestamped, rotated log files.

    Files are named ``<route>-<UTC stamp>.log`` so that sorting by name sorts
    by creation time. A fresh file is opened on every attach; it is never
    appended to across restarts.
    """

    def __init__(
        self,
        route: str,
        log_dir: Path,
        rotation_interval: float = 3600.0,
        retention: int = 24,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.route = route
        self.log_dir = Path(log_dir)
        self.rotation_interval = rotation_interval
        self.retention = retention
        self._clock = clock
        self._file_pattern = re.compile(
            rf"^{re.escape(route)}-\d{{8}}T\d{{6}}\.\d{{6}}Z\.log$"
        )
        self._handle: IO[bytes] | None = None
        self._current_path: Path | None = None
        self._last_stamp: datetime | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._rotation_task: asyncio.Task[None] | None = None

    @property
    def current_path(self) -> Path | None:
        return self._current_path

    @property
    def attached(self) -> bool:
        return bool(self._pumps) or self._rotation_task is not None

    def log_files(self) -> list[Path]:
        if not self.log_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.log_dir.iterdir()
            if path.is_file() and self._file_pattern.match(path.name)
        )

    def _next_path(self) -> Path:
        stamp = self._clock()
        if self._last_stamp is not None and stamp <= self._last_stamp:
            stamp = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = stamp
        return self.log_dir / f"{self.route}-{stamp.strftime(_STAMP_FORMAT)}.log"

    def _open_next(self) -> tuple[Path, IO[bytes]]:
        path = self._next_path()
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handle = open(path, "wb", buffering=0)
        except OSError as exc:
            raise LogRotationFailure(f"Cannot create log file {path}: {exc}") from exc
        return path, handle

    def attach(self, sources: list[LogSource]) -> None:
        """Start capturing ``sources`` into a new log file.

        Output is drained even when the log file cannot be created, so that a
        full pipe never stalls the backend.
        """
        if self.attached:
            raise RuntimeError(f"Log manager for route {self.route} is already attached")
        try:
            self._current_path, self._handle = self._open_next()
            self.enforce_retention()
        except LogRotationFailure as exc:
            logger.warning("Backend log capture degraded for route %s: %s", self.route, exc)

        for stream_name, source in sources:
            self._pumps.append(
                asyncio.create_task(
                    self._pump(stream_name, source),
                    name=f"coldstart-logs-{self.route}-{stream_name}",
                )
            )
        self._rotation_task = asyncio.create_task(
            self._rotation_loop(),
            name=f"coldstart-log-rotation-{self.route}",
        )

    def rotate(self) -> Path:
        """Switch to a new log file, then apply retention.

        The new file is opened before the current one is closed, so a failed
        rotation keeps logging to the current file.

        Raises:
            LogRotationFailure: When the new file cannot be created or old files
                cannot be deleted.
        """
        path, handle = self._open_next()
        previous = self._handle
        self._handle = handle
        self._current_path = path
        if previous is not None:
            with contextlib.suppress(OSError):
                previous.close()
        logger.debug("Rotated log for route %s to %s", self.route, path.name)
        self.enforce_retention()
        return path

    def enforce_retention(self) -> list[Path]:
        files = self.log_files()
        excess = files[: max(0, len(files) - self.retention)]
        removed: list[Path] = []
        failures: list[str] = []
        for path in excess:
            if path == self._current_path:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                failures.append(f"{path.name}: {exc}")
                continue
            removed.append(path)
        if failures:
            raise LogRotationFailure(
                f"Could not delete expired logs for route {self.route}: "
                + "; ".join(failures)
            )
        return removed

    def write_line(self, stream_name: str, line: bytes) -> None:
        text = line.rstrip(b"\r")
        if not text.strip() or self._handle is None:
            return
        stamp = self._clock().isoformat(timespec="milliseconds")
        try:
            self._handle.write(f"{stamp} [{stream_name}] ".encode() + text + b"\n")
        except (OSError, ValueError) as exc:
            logger.warning("Failed to write backend log for route %s: %s", self.route, exc)

    async def _pump(self, stream_name: str, source) -> None:
        try:
            async for line in source:
                self.write_line(stream_name, line)
        except Exception:
            logger.exception(
                "Backend output stream %s for route %s failed", stream_name, self.route
            )
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _rotation_loop(self) -> None:
        while True:
            await asyncio.sleep(self.rotation_interval)
            try:
                self.rotate()
            except LogRotationFailure as exc:
                # Retried on the next tick
                logger.warning("Log rotation failed for route %s: %s", self.route, exc)

    async def close(self) -> None:
        """Stop capturing and close the active file."""
        rotation_task = self._rotation_task
        self._rotation_task = None
        if rotation_task is not None:
            rotation_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await rotation_task

        pumps = self._pumps
        self._pumps = []
        if pumps:
            # Let the pumps flush what the exited unit left in its pipes
            _, pending = await asyncio.wait(pumps, timeout=_DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        handle = self._handle
        self._handle = None
        if handle is not None:
            with contextlib.suppress(OSError):
                handle.close()
