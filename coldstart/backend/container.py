from __future__ import annotations

import asyncio
import contextlib
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Optional

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from coldstart.backend.base import LineSplitter, LogSource, RuntimeAdapter, StartedUnit
from coldstart.core.logging import get_logger
from coldstart.shared import SignalKind, SpawnFailure, StopTimeout
from coldstart.supervisor.models import BackendConfig

logger = get_logger(__name__)

_CONTAINER_SIGNALS: dict[str, str] = {
    "interrupt": "SIGINT",
    "terminate": "SIGTERM",
    "kill": "SIGKILL",
}


class ContainerRuntimeAdapter(RuntimeAdapter):
    """Runs the backend as a Docker container with the app path bind-mounted.

    The Docker SDK is synchronous, so every call is pushed to a worker thread.
    """

    kind = "container"
    graceful_signal: SignalKind = "terminate"

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        host: str = "127.0.0.1",
    ) -> None:
        self._client = client
        self._host = host
        self._containers: dict[str, Any] = {}

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _create_container(self, config: BackendConfig, port: int) -> Any:
        environment = dict(config.env)
        environment["PORT"] = str(port)
        volumes: dict[str, dict[str, str]] = {}
        if config.app_path:
            volumes[str(Path(config.app_path).resolve())] = {
                "bind": config.container_app_dir,
                "mode": "rw",
            }
        options: dict[str, Any] = {
            "command": list(config.args) or None,
            "name": f"coldstart-{config.name}-{port}",
            "working_dir": config.container_app_dir,
            "volumes": volumes,
            "ports": {f"{port}/tcp": port},
            "environment": environment,
            "labels": {"coldstart": "true", "coldstart.route": config.name},
        }
        containers = self._docker().containers
        try:
            return containers.create(image=config.image, **options)
        except ImageNotFound:
            logger.info("Pulling image %s for route %s", config.image, config.name)
            self._docker().images.pull(config.image)
            return containers.create(image=config.image, **options)

    def _run_container(self, config: BackendConfig, port: int) -> Any:
        container = self._create_container(config, port)
        try:
            container.start()
        except DockerException:
            # A created container keeps its name; remove it so the next start
            # can reuse the same port.
            try:
                container.remove(force=True)
            except DockerException as exc:
                logger.warning(
                    "Failed to remove unstarted container %s: %s",
                    str(container.id)[:12],
                    exc,
                )
            raise
        return container

    async def start(self, config: BackendConfig, port: int) -> StartedUnit:
        try:
            container = await asyncio.to_thread(self._run_container, config, port)
        except ImageNotFound as exc:
            raise SpawnFailure(f"Container image not found: {config.image}") from exc
        except (APIError, DockerException) as exc:
            raise SpawnFailure(f"Failed to create container: {exc}") from exc

        identity = str(container.id)
        self._containers[identity] = container
        logger.info(
            "Started container %s for route %s (image %s, port %s)",
            identity[:12],
            config.name,
            config.image,
            port,
        )
        return StartedUnit(identity=identity, host=self._host, port=port)

    async def signal(self, identity: str, kind: SignalKind) -> None:
        container = self._containers.get(identity)
        if container is None:
            return
        try:
            await asyncio.to_thread(container.kill, signal=_CONTAINER_SIGNALS[kind])
        except NotFound:
            return
        except APIError as exc:
            # Docker answers 409 when the container is no longer running
            logger.debug("Signal %s to container %s ignored: %s", kind, identity[:12], exc)

    async def wait_exit(self, identity: str, timeout: float) -> None:
        container = self._containers.get(identity)
        if container is None:
            return
        try:
            await asyncio.to_thread(container.wait, timeout=timeout)
        except NotFound:
            return
        except requests.exceptions.RequestException as exc:
            raise StopTimeout(identity, timeout) from exc

    async def cleanup(self, identity: str) -> None:
        container = self._containers.pop(identity, None)
        if container is None:
            return
        try:
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            return
        except APIError as exc:
            logger.warning("Failed to remove container %s: %s", identity[:12], exc)

    async def is_running(self, identity: str) -> bool:
        container = self._containers.get(identity)
        if container is None:
            return False
        try:
            await asyncio.to_thread(container.reload)
        except NotFound:
            return False
        except APIError as exc:
            # Daemon hiccup; assume the unit is still there.
            logger.debug("Container %s status unavailable: %s", identity[:12], exc)
            return True
        return container.status in {"created", "running"}

    def log_sources(self, identity: str) -> list[LogSource]:
        container = self._containers.get(identity)
        if container is None:
            return []
        return [("container", _follow_container_logs(container))]


async def _follow_container_logs(container: Any) -> AsyncIterator[bytes]:
    """Bridge the blocking ``container.logs(follow=True)`` stream into asyncio."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()

    def _publish(item: Optional[bytes]) -> None:
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(queue.put_nowait, item)

    def _pump() -> None:
        try:
            for chunk in container.logs(stream=True, follow=True):
                _publish(chunk)
        except (APIError, DockerException, requests.exceptions.RequestException) as exc:
            logger.debug("Container log stream ended: %s", exc)
        finally:
            _publish(None)

    thread = threading.Thread(
        target=_pump,
        name=f"coldstart-logs-{str(container.id)[:12]}",
        daemon=True,
    )
    thread.start()

    splitter = LineSplitter()
    while True:
        chunk = await queue.get()
        if chunk is None:
            break
        for line in splitter.feed(chunk):
            yield line
    for line in splitter.flush():
        yield line
