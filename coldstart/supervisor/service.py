from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from coldstart.backend import PortAllocator, RuntimeAdapter, StartedUnit, create_adapter
from coldstart.core.logging import get_logger
from coldstart.shared import (
    ALLOWED_TRANSITIONS,
    BackendState,
    InvalidTransition,
    NotReady,
    SpawnFailure,
    StartTimeout,
    StopTimeout,
)
from coldstart.supervisor.logs import LogManager
from coldstart.supervisor.models import (
    BackendConfig,
    BackendInstance,
    BackendStatusResponse,
)
from coldstart.supervisor.probe import probe_tcp
from coldstart.supervisor.reaper import IdleReaper

logger = get_logger(__name__)

ProbeFunc = Callable[[str, int, float, float], Awaitable[None]]


def _retrieve_exception(future: asyncio.Future[Any]) -> None:
    # Waiters may all have timed out; mark the outcome as observed.
    if not future.cancelled():
        future.exception()


class Supervisor:
    """Owns the lifecycle of one route's backend unit.

    Every state transition happens under ``_lock``. Waiting for readiness,
    forwarding, and waiting for a unit to exit happen outside it, so a ready
    backend serves requests fully concurrently.

    Starts are shared: the first request that finds the backend stopped
    creates a start task and a one-shot future; every request arriving before
    the outcome waits on that same future, so a unit is never spawned twice.
    """

    def __init__(
        self,
        config: BackendConfig,
        adapter: RuntimeAdapter,
        ports: PortAllocator,
        log_dir: Path,
        *,
        probe: ProbeFunc = probe_tcp,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._adapter = adapter
        self._ports = ports
        self._probe = probe
        self._clock = clock
        self._lock = asyncio.Lock()
        self._instance = BackendInstance(route=config.name)
        self._logs = LogManager(
            config.name,
            Path(log_dir),
            rotation_interval=config.log_rotation_interval,
            retention=config.log_retention,
        )
        self._pending_start: asyncio.Future[str] | None = None
        self._start_task: asyncio.Task[None] | None = None
        self._stop_done: asyncio.Event | None = None
        self._reaper: IdleReaper | None = None

    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> BackendState:
        return self._instance.state

    @property
    def address(self) -> str:
        return self._instance.address

    @property
    def identity(self) -> str:
        return self._instance.identity

    @property
    def generation(self) -> int:
        return self._instance.generation

    @property
    def log_manager(self) -> LogManager:
        return self._logs

    @property
    def reaper(self) -> IdleReaper | None:
        return self._reaper

    @property
    def last_active_at(self) -> float:
        return self._instance.last_active_at

    def idle_seconds(self) -> float:
        return self._clock() - self._instance.last_active_at

    # ------------------------------------------------------------------
    # State transitions (callers hold ``_lock``)
    # ------------------------------------------------------------------

    def _transition_locked(
        self,
        target: BackendState,
        *,
        identity: str | None = None,
        address: str = "",
    ) -> None:
        instance = self._instance
        current = instance.state
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current, target)
        instance.state = target
        # address is set only while ready; identity only while a unit exists
        instance.address = address if target == "ready" else ""
        if target == "stopped":
            instance.identity = ""
            instance.port = None
        elif identity is not None:
            instance.identity = identity
        logger.info(
            "Backend %s: %s -> %s (generation %s)",
            self.name,
            current,
            target,
            instance.generation,
        )

    def _mark_active(self) -> None:
        now = self._clock()
        if now > self._instance.last_active_at:
            self._instance.last_active_at = now
        self._instance.last_active_wall = self._utc_now()

    def touch(self) -> None:
        """Record request activity.

        Never awaits, so it cannot interleave with the reaper's locked idle
        check. ``last_active_at`` never moves backwards.
        """
        self._mark_active()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def ensure_ready(self) -> str:
        """Return the backend address, starting the backend if needed.

        Raises:
            SpawnFailure: The unit could not be launched.
            StartTimeout: The backend was not ready within ``start_timeout``.
        """
        self._mark_active()
        instance = self._instance
        if instance.state == "ready" and instance.address:
            return instance.address

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.start_timeout
        while True:
            # A start in flight is joined without touching the lock, which the
            # start task holds while the adapter launches the unit.
            pending: asyncio.Future[str] | None = self._pending_start
            stop_done: asyncio.Event | None = None
            if pending is None:
                await self._acquire_lock_until(deadline)
                try:
                    instance = self._instance
                    if instance.state == "ready":
                        return instance.address
                    if instance.state == "stopping":
                        stop_done = self._stop_done
                    else:
                        pending = self._pending_start or self._initiate_start_locked()
                finally:
                    self._lock.release()

            remaining = max(0.0, deadline - loop.time())
            try:
                if pending is not None:
                    # shield: one caller giving up must not cancel the shared start
                    return await asyncio.wait_for(asyncio.shield(pending), remaining)
                if stop_done is not None:
                    await asyncio.wait_for(stop_done.wait(), remaining)
            except asyncio.TimeoutError as exc:
                raise self._start_timeout_error() from exc

    def _start_timeout_error(self) -> StartTimeout:
        return StartTimeout(
            f"Backend {self.name} was not ready within "
            f"{self.config.start_timeout:g}s"
        )

    async def _acquire_lock_until(self, deadline: float) -> None:
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            await asyncio.wait_for(self._lock.acquire(), remaining)
        except asyncio.TimeoutError as exc:
            raise self._start_timeout_error() from exc

    def _initiate_start_locked(self) -> asyncio.Future[str]:
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        self._pending_start = future
        self._start_task = asyncio.create_task(
            self._run_start(future),
            name=f"coldstart-start-{self.name}",
        )
        return future

    def _finish_start_locked(
        self,
        future: asyncio.Future[str],
        *,
        address: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self._pending_start is future:
            self._pending_start = None
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(address or "")

    async def _spawn_locked(self) -> StartedUnit:
        port: int | None = None
        try:
            port = self._ports.acquire(self.config)
            unit = await self._adapter.start(self.config, port)
        except BaseException:
            self._ports.release(port)
            raise

        instance = self._instance
        instance.generation += 1
        instance.port = unit.port
        instance.started_at = self._utc_now()
        self._transition_locked("starting", identity=unit.identity)
        self._logs.attach(self._adapter.log_sources(unit.identity))
        return unit

    async def _run_start(self, future: asyncio.Future[str]) -> None:
        probe_budget = self.config.start_timeout + self.config.start_retry_grace
        unit: StartedUnit | None = None
        try:
            async with self._lock:
                unit = await self._spawn_locked()
            await self._await_readiness(unit, probe_budget)
        except SpawnFailure as exc:
            logger.error("Failed to start backend %s: %s", self.name, exc)
            async with self._lock:
                if unit is not None and self._instance.state == "starting":
                    await self._abort_start_locked()
                self._finish_start_locked(future, error=exc)
            return
        except NotReady as exc:
            failure = StartTimeout(
                f"Backend {self.name} did not accept connections within "
                f"{probe_budget:g}s"
            )
            failure.__cause__ = exc
            logger.error("%s; tearing it down", failure)
            async with self._lock:
                await self._abort_start_locked()
                self._finish_start_locked(future, error=failure)
            return
        except asyncio.CancelledError:
            if self._pending_start is future:
                self._pending_start = None
            future.cancel()
            raise
        except Exception as exc:
            logger.exception("Unexpected error while starting backend %s", self.name)
            failure = SpawnFailure(f"Backend {self.name} failed to start: {exc}")
            failure.__cause__ = exc
            async with self._lock:
                if unit is not None and self._instance.state == "starting":
                    await self._abort_start_locked()
                self._finish_start_locked(future, error=failure)
            return

        async with self._lock:
            self._transition_locked("ready", address=unit.address)
            self._mark_active()
            self._start_reaper_locked(self._instance.generation)
            self._finish_start_locked(future, address=unit.address)
        logger.info("Backend %s is ready at %s", self.name, unit.address)

    async def _await_readiness(self, unit: StartedUnit, budget: float) -> None:
        """Wait until the unit accepts connections while watching that it still runs.

        Raises:
            NotReady: The unit never accepted a connection within ``budget``.
            SpawnFailure: The unit exited before it became ready.
        """
        readiness_task = asyncio.create_task(
            self._probe(unit.host, unit.port, budget, self.config.probe_interval),
            name=f"coldstart-readiness-{self.name}",
        )
        try:
            while True:
                done, _ = await asyncio.wait(
                    {readiness_task}, timeout=self.config.probe_interval
                )
                if done:
                    break
                await self._raise_if_exited(unit)
        finally:
            if not readiness_task.done():
                readiness_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await readiness_task
        error = readiness_task.exception()
        # An exited unit is a failed launch even when something else accepted
        # connections on its port.
        await self._raise_if_exited(unit)
        if error is not None:
            raise error

    async def _raise_if_exited(self, unit: StartedUnit) -> None:
        if not await self._adapter.is_running(unit.identity):
            raise SpawnFailure(
                f"Backend {self.name} unit {unit.identity} exited before "
                "accepting connections"
            )

    async def _abort_start_locked(self) -> None:
        await self._terminate(self._instance.identity)
        await self._logs.close()
        self._ports.release(self._instance.port)
        self._transition_locked("stopped")

    def _start_reaper_locked(self, generation: int) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
        self._reaper = IdleReaper(
            self.name,
            generation,
            self._reap_if_idle,
            self.config.idle_poll_interval,
        )
        self._reaper.start()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop the backend and wait until it is stopped.

        Idempotent. A stop during start-up waits for the start outcome first.
        """
        while True:
            waiter: Awaitable[Any]
            async with self._lock:
                instance = self._instance
                if instance.state == "ready":
                    identity = self._begin_stop_locked()
                    break
                if instance.state == "stopping" and self._stop_done is not None:
                    waiter = self._stop_done.wait()
                elif self._pending_start is not None:
                    waiter = asyncio.wait({self._pending_start})
                else:
                    return
            await waiter
        await self._finish_stop(identity)

    def _begin_stop_locked(self) -> str:
        reaper = self._reaper
        self._reaper = None
        if reaper is not None:
            # no-op when the reaper itself is stopping us
            reaper.cancel()
        self._stop_done = asyncio.Event()
        identity = self._instance.identity
        self._transition_locked("stopping")
        return identity

    async def _finish_stop(self, identity: str) -> None:
        try:
            await self._terminate(identity)
        finally:
            async with self._lock:
                await self._logs.close()
                self._ports.release(self._instance.port)
                self._transition_locked("stopped")
                stop_done = self._stop_done
                self._stop_done = None
                if stop_done is not None:
                    stop_done.set()

    async def _terminate(self, identity: str) -> None:
        adapter = self._adapter
        grace = self.config.stop_grace_timeout
        try:
            await adapter.signal(identity, adapter.graceful_signal)
            try:
                await adapter.wait_exit(identity, grace)
            except StopTimeout as exc:
                logger.warning("%s; escalating to kill", exc)
                await adapter.signal(identity, "kill")
                try:
                    await adapter.wait_exit(identity, grace)
                except StopTimeout as kill_exc:
                    logger.error("Backend %s survived kill: %s", self.name, kill_exc)
        except Exception:
            logger.exception(
                "Failed to terminate unit %s for backend %s", identity, self.name
            )
        finally:
            try:
                await adapter.cleanup(identity)
            except Exception:
                logger.exception("Failed to clean up unit %s for backend %s", identity, self.name)

    async def _reap_if_idle(self, generation: int) -> bool:
        """Idle check run by the reaper. Returns True when the reaper is done."""
        async with self._lock:
            instance = self._instance
            if instance.generation != generation or instance.state != "ready":
                return True
            idle = self._clock() - instance.last_active_at
            if idle <= self.config.idle_timeout:
                if await self._adapter.is_running(instance.identity):
                    return False
                logger.warning(
                    "Backend %s unit %s exited unexpectedly; resetting",
                    self.name,
                    instance.identity,
                )
            else:
                logger.info(
                    "Backend %s idle for %.1fs (limit %gs); stopping",
                    self.name,
                    idle,
                    self.config.idle_timeout,
                )
            identity = self._begin_stop_locked()
        await self._finish_stop(identity)
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status(self) -> BackendStatusResponse:
        instance = self._instance
        return BackendStatusResponse(
            name=self.name,
            kind=self.config.kind,
            path_prefix=self.config.path_prefix,
            state=instance.state,
            identity=instance.identity,
            address=instance.address,
            generation=instance.generation,
            started_at=instance.started_at,
            last_active_at=instance.last_active_wall,
            reaper_running=self._reaper is not None and self._reaper.running,
        )


class SupervisorRegistry:
    """One supervisor per configured route, matched by longest path prefix."""

    def __init__(self, supervisors: Iterable[Supervisor] = ()) -> None:
        self._supervisors: dict[str, Supervisor] = {}
        for supervisor in supervisors:
            if supervisor.name in self._supervisors:
                raise ValueError(f"Duplicate backend route '{supervisor.name}'")
            self._supervisors[supervisor.name] = supervisor
        self._by_prefix = sorted(
            self._supervisors.values(),
            key=lambda supervisor: len(supervisor.config.path_prefix.rstrip("/")),
            reverse=True,
        )

    @classmethod
    def from_configs(
        cls,
        configs: Iterable[BackendConfig],
        log_dir: Path,
        *,
        adapter_factory: Callable[[BackendConfig], RuntimeAdapter] = create_adapter,
        ports: PortAllocator | None = None,
    ) -> "SupervisorRegistry":
        shared_ports = ports or PortAllocator()
        return cls(
            Supervisor(config, adapter_factory(config), shared_ports, log_dir)
            for config in configs
        )

    def __iter__(self) -> Iterator[Supervisor]:
        return iter(self._supervisors.values())

    def __len__(self) -> int:
        return len(self._supervisors)

    def get(self, name: str) -> Supervisor | None:
        return self._supervisors.get(name)

    def match(self, path: str) -> Supervisor | None:
        for supervisor in self._by_prefix:
            prefix = supervisor.config.path_prefix.rstrip("/")
            if not prefix or path == prefix or path.startswith(prefix + "/"):
                return supervisor
        return None

    async def shutdown(self) -> None:
        supervisors = list(self._supervisors.values())
        results = await asyncio.gather(
            *(supervisor.stop() for supervisor in supervisors),
            return_exceptions=True,
        )
        for supervisor, result in zip(supervisors, results):
            if isinstance(result, Exception):
                logger.error("Failed to stop backend %s: %s", supervisor.name, result)
