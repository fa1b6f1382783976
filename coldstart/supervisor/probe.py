from __future__ import annotations

import asyncio
import contextlib

from coldstart.core.logging import get_logger
from coldstart.shared import NotReady

logger = get_logger(__name__)

DEFAULT_PROBE_INTERVAL = 0.1
_ATTEMPT_TIMEOUT = 1.0


async def probe_tcp(
    host: str,
    port: int,
    timeout: float,
    interval: float = DEFAULT_PROBE_INTERVAL,
) -> None:
    """Poll ``host:port`` until it accepts a TCP connection.

    Refused or timed-out attempts are retried every ``interval`` seconds.
    Only running out of ``timeout`` is an error.

    Raises:
        NotReady: When no attempt succeeded within ``timeout``.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        attempts += 1
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=min(_ATTEMPT_TIMEOUT, remaining),
            )
        except (OSError, asyncio.TimeoutError):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))
            continue
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        logger.debug("%s:%s accepted a connection after %s attempt(s)", host, port, attempts)
        return
    raise NotReady(host, port, timeout)
