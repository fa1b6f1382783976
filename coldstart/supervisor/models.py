from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from coldstart.shared import BackendKind, BackendState

_ROUTE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


class BackendConfig(BaseModel):
    """Immutable launch and lifecycle settings for one proxied route."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Route name, used in log file names")
    path_prefix: str = Field(
        default="/",
        description="Inbound path prefix served by this backend",
    )
    command: str | None = Field(
        default=None,
        description="Executable launched by the process runtime",
    )
    image: str | None = Field(
        default=None,
        description="Container image launched by the container runtime",
    )
    args: tuple[str, ...] = Field(
        default=(),
        description="Arguments passed to the command or container entrypoint",
    )
    app_path: str | None = Field(
        default=None,
        description="Working directory (process) or bind-mount source (container)",
    )
    container_app_dir: str = Field(
        default="/app",
        description="Bind-mount target and working directory inside the container",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the backend unit",
    )
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Explicit backend port; auto-assigned from the range when unset",
    )
    port_range_start: int = Field(default=9000, ge=1, le=65535)
    port_range_end: int = Field(default=9999, ge=1, le=65535)
    idle_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds without requests before the backend is stopped",
    )
    idle_poll_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between idle checks",
    )
    start_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds a request waits for the backend to become ready",
    )
    start_retry_grace: float = Field(
        default=5.0,
        ge=0,
        description="Extra seconds the start keeps probing after waiters time out",
    )
    probe_interval: float = Field(default=0.1, gt=0)
    stop_grace_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for a graceful exit before killing",
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-request forwarding timeout in seconds",
    )
    log_rotation_interval: float = Field(default=3600.0, gt=0)
    log_retention: int = Field(default=24, ge=1)

    @model_validator(mode="after")
    def _validate_launch_target(self) -> "BackendConfig":
        if not _ROUTE_NAME_PATTERN.match(self.name):
            raise ValueError(
                "Route name must be 1-64 characters of letters, digits, '.', '_' or '-'"
            )
        if bool(self.command) == bool(self.image):
            raise ValueError("Exactly one of 'command' or 'image' must be set")
        if not self.path_prefix.startswith("/"):
            raise ValueError("path_prefix must start with '/'")
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must not be lower than port_range_start")
        return self

    @property
    def kind(self) -> BackendKind:
        return "container" if self.image else "process"


@dataclass
class BackendInstance:
    route: str
    state: BackendState = "stopped"
    identity: str = ""
    address: str = ""
    port: int | None = None
    generation: int = 0
    last_active_at: float = 0.0
    last_active_wall: datetime | None = None
    started_at: datetime | None = None


class BackendStatusResponse(BaseModel):
    name: str = Field(description="Route name")
    kind: BackendKind = Field(description="Runtime variant")
    path_prefix: str = Field(description="Inbound path prefix")
    state: BackendState = Field(description="Lifecycle state")
    identity: str = Field(description="Process id or container id")
    address: str = Field(description="Backend base URL when ready")
    generation: int = Field(description="Number of starts so far")
    started_at: datetime | None = Field(
        default=None, description="Time of the most recent start"
    )
    last_active_at: datetime | None = Field(
        default=None, description="Time of the most recent request"
    )
    reaper_running: bool = Field(description="Whether an idle reaper is active")


class ProxyHealthResponse(BaseModel):
    status: str = Field(description="Service status")
    backends: int = Field(description="Configured backend count")
    ready: int = Field(description="Backends currently ready")
    backends_status: list[BackendStatusResponse] = Field(
        default_factory=list, description="Per-backend status"
    )
