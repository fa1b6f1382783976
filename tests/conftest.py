"""Shared test fixtures: a scriptable runtime adapter, a fake probe, and config factories."""

from __future__ import annotations

import asyncio
import socket
import sys
from pathlib import Path

import pytest

from coldstart.backend.base import RuntimeAdapter, StartedUnit
from coldstart.backend.ports import PortAllocator
from coldstart.shared import NotReady, SpawnFailure, StopTimeout
from coldstart.supervisor.models import BackendConfig
from coldstart.supervisor.service import Supervisor

ECHO_SERVER = Path(__file__).parent / "backends" / "echo_server.py"


class FakeRuntimeAdapter(RuntimeAdapter):
    """In-memory adapter that records every call made by the supervisor."""

    kind = "fake"
    graceful_signal = "terminate"

    def __init__(self) -> None:
        self.start_latency = 0.0
        self.fail_start = False
        self.exit_on_start = False
        self.ignored_signals: set[str] = set()
        self.start_calls = 0
        self.signals: list[tuple[str, str]] = []
        self.cleaned: list[str] = []
        self.running: dict[str, bool] = {}
        self._exited: dict[str, asyncio.Event] = {}

    async def start(self, config: BackendConfig, port: int) -> StartedUnit:
        self.start_calls += 1
        await asyncio.sleep(self.start_latency)
        if self.fail_start:
            raise SpawnFailure(f"cannot launch {config.command}")
        identity = f"unit-{self.start_calls}"
        self.running[identity] = True
        self._exited[identity] = asyncio.Event()
        if self.exit_on_start:
            self.crash(identity)
        return StartedUnit(identity=identity, host="127.0.0.1", port=port)

    def crash(self, identity: str) -> None:
        self.running[identity] = False
        self._exited[identity].set()

    async def signal(self, identity: str, kind: str) -> None:
        self.signals.append((identity, kind))
        if kind not in self.ignored_signals:
            self.crash(identity)

    async def wait_exit(self, identity: str, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._exited[identity].wait(), timeout)
        except asyncio.TimeoutError as exc:
            raise StopTimeout(identity, timeout) from exc

    async def cleanup(self, identity: str) -> None:
        self.cleaned.append(identity)

    async def is_running(self, identity: str) -> bool:
        return self.running.get(identity, False)

    def log_sources(self, identity: str) -> list:
        return []


class ScriptedPortAllocator(PortAllocator):
    """Port allocator whose notion of a free port is a fixed busy set."""

    def __init__(self, busy=(), **kwargs) -> None:
        super().__init__(**kwargs)
        self.busy = set(busy)
        self.checked: list[int] = []

    def _is_free(self, port: int) -> bool:
        self.checked.append(port)
        return port not in self.busy


class FakeProbe:
    """Readiness probe stand-in: succeeds after ``delay`` or exhausts its budget."""

    def __init__(self) -> None:
        self.delay = 0.0
        self.ready = True
        self.calls: list[tuple[str, int, float]] = []

    async def __call__(self, host: str, port: int, timeout: float, interval: float) -> None:
        self.calls.append((host, port, timeout))
        if not self.ready:
            await asyncio.sleep(timeout)
            raise NotReady(host, port, timeout)
        await asyncio.sleep(self.delay)


@pytest.fixture()
def make_config():
    def _make(**overrides) -> BackendConfig:
        values = {
            "name": "app",
            "command": "node",
            "args": ("server.js",),
            "port": 9100,
            "stop_grace_timeout": 0.2,
        }
        values.update(overrides)
        return BackendConfig(**values)

    return _make


@pytest.fixture()
def fake_adapter() -> FakeRuntimeAdapter:
    return FakeRuntimeAdapter()


@pytest.fixture()
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture()
def ports() -> ScriptedPortAllocator:
    return ScriptedPortAllocator()


@pytest.fixture()
def scripted_ports():
    return ScriptedPortAllocator


@pytest.fixture()
def make_supervisor(tmp_path, fake_adapter, fake_probe, ports, make_config):
    def _make(*, clock=None, **config_overrides) -> Supervisor:
        kwargs = {"probe": fake_probe}
        if clock is not None:
            kwargs["clock"] = clock
        return Supervisor(
            make_config(**config_overrides),
            fake_adapter,
            ports,
            tmp_path / "logs",
            **kwargs,
        )

    return _make


@pytest.fixture()
def echo_command() -> tuple[str, tuple[str, ...]]:
    return sys.executable, (str(ECHO_SERVER),)


@pytest.fixture()
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def wait_for_state(supervisor: Supervisor, state: str, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while supervisor.state != state:
        if loop.time() > deadline:
            raise AssertionError(
                f"backend {supervisor.name} stayed {supervisor.state}, expected {state}"
            )
        await asyncio.sleep(0.01)


@pytest.fixture()
def wait_state():
    return wait_for_state
