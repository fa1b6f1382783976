"""Runtime adapters that launch and reap backend units."""

from coldstart.backend.base import LineSplitter, LogSource, RuntimeAdapter, StartedUnit
from coldstart.backend.container import ContainerRuntimeAdapter
from coldstart.backend.ports import PortAllocator
from coldstart.backend.process import ProcessRuntimeAdapter
from coldstart.supervisor.models import BackendConfig


def create_adapter(config: BackendConfig) -> RuntimeAdapter:
    """Select the runtime variant for a route."""
    if config.kind == "container":
        return ContainerRuntimeAdapter()
    return ProcessRuntimeAdapter()


__all__ = [
    "ContainerRuntimeAdapter",
    "LineSplitter",
    "LogSource",
    "PortAllocator",
    "ProcessRuntimeAdapter",
    "RuntimeAdapter",
    "StartedUnit",
    "create_adapter",
]
