from __future__ import annotations

import socket

from coldstart.core.logging import get_logger
from coldstart.shared import NoPortAvailable, PortInUse
from coldstart.supervisor.models import BackendConfig

logger = get_logger(__name__)


class PortAllocator:
    """Deterministic first-free-port scan shared by every route in the process.

    Ports handed out are reserved until released so that two routes starting
    at the same time never pick the same port.
    """

    def __init__(self, bind_host: str = "0.0.0.0", max_attempts: int | None = None) -> None:
        self._bind_host = bind_host
        self._max_attempts = max_attempts
        self._reserved: set[int] = set()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    def _is_free(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            # Lingering TIME_WAIT connections of a stopped unit do not count,
            # a listener still does.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self._bind_host, port))
            except OSError:
                return False
        return True

    def acquire(self, config: BackendConfig) -> int:
        if config.port is not None:
            if config.port in self._reserved or not self._is_free(config.port):
                raise PortInUse(config.port)
            self._reserved.add(config.port)
            return config.port

        attempts = 0
        for port in range(config.port_range_start, config.port_range_end + 1):
            if self._max_attempts is not None and attempts >= self._max_attempts:
                break
            if port in self._reserved:
                continue
            attempts += 1
            if self._is_free(port):
                self._reserved.add(port)
                return port
        logger.warning(
            "Port range %s-%s exhausted for route %s after %s attempts",
            config.port_range_start,
            config.port_range_end,
            config.name,
            attempts,
        )
        raise NoPortAvailable(config.port_range_start, config.port_range_end)

    def release(self, port: int | None) -> None:
        if port is not None:
            self._reserved.discard(port)
