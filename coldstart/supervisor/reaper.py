from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from coldstart.core.logging import get_logger

logger = get_logger(__name__)

# Returns True once the reaper's work is done (instance stopped or superseded).
ReapCheck = Callable[[int], Awaitable[bool]]


class IdleReaper:
    """Background watcher bound to one backend generation.

    Every ``poll_interval`` seconds it calls ``check(generation)``; the check
    decides whether the instance is idle (or gone) and stops it. The reaper
    exits as soon as the check reports it is done, and is cancelled by any
    other stop of its generation.
    """

    def __init__(
        self,
        route: str,
        generation: int,
        check: ReapCheck,
        poll_interval: float,
    ) -> None:
        self.route = route
        self.generation = generation
        self._check = check
        self._poll_interval = poll_interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            self._run(),
            name=f"coldstart-reaper-{self.route}-{self.generation}",
        )

    def cancel(self) -> None:
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                done = await self._check(self.generation)
            except Exception:
                logger.exception(
                    "Idle check failed for route %s (generation %s)",
                    self.route,
                    self.generation,
                )
                continue
            if done:
                logger.debug(
                    "Reaper for route %s generation %s exiting",
                    self.route,
                    self.generation,
                )
                return
