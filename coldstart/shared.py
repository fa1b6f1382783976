"""Shared types, constants, and errors used across the supervisor, runtime adapters, and proxy."""

from __future__ import annotations

from typing import Literal

BackendState = Literal["stopped", "starting", "ready", "stopping"]
SignalKind = Literal["interrupt", "terminate", "kill"]
BackendKind = Literal["process", "container"]

VALID_BACKEND_STATES: set[str] = {"stopped", "starting", "ready", "stopping"}

# Legal lifecycle edges. ``starting -> stopped`` is the failed-start edge.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "stopped": {"starting"},
    "starting": {"ready", "stopped"},
    "ready": {"stopping"},
    "stopping": {"stopped"},
}

ADMIN_PATH_PREFIX = "/_coldstart"


class ColdstartError(Exception):
    """Base class for every error raised by the supervisor stack."""


class ConfigurationError(ColdstartError):
    pass


class SpawnFailure(ColdstartError):
    """The runtime adapter could not start the backend unit."""


class NoPortAvailable(SpawnFailure):
    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end
        super().__init__(f"No free port available in range {start}-{end}")


class PortInUse(SpawnFailure):
    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"Configured backend port {port} is already in use")


class StartTimeout(ColdstartError):
    """The backend did not become reachable within the start timeout."""


class NotReady(ColdstartError):
    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        super().__init__(
            f"{host}:{port} did not accept TCP connections within {timeout:g}s"
        )


class ProxyFailure(ColdstartError):
    """Transport-level failure while forwarding a request to a ready backend."""


class StopTimeout(ColdstartError):
    def __init__(self, identity: str, timeout: float) -> None:
        self.identity = identity
        self.timeout = timeout
        super().__init__(f"Backend unit {identity} did not exit within {timeout:g}s")


class LogRotationFailure(ColdstartError):
    pass


class InvalidTransition(ColdstartError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal backend state transition {current} -> {target}")
