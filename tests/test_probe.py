import asyncio

import pytest

from coldstart.shared import NotReady
from coldstart.supervisor.probe import probe_tcp


async def _close_immediately(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()


@pytest.mark.asyncio
async def test_probe_succeeds_when_port_accepts():
    server = await asyncio.start_server(_close_immediately, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        await probe_tcp("127.0.0.1", port, timeout=1.0)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_probe_gives_up_after_timeout(free_port):
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(NotReady) as excinfo:
        await probe_tcp("127.0.0.1", free_port, timeout=0.3, interval=0.05)

    assert loop.time() - started >= 0.25
    assert excinfo.value.port == free_port


@pytest.mark.asyncio
async def test_probe_waits_for_late_listener(free_port):
    async def listen_later() -> asyncio.AbstractServer:
        await asyncio.sleep(0.2)
        return await asyncio.start_server(_close_immediately, "127.0.0.1", free_port)

    listener = asyncio.create_task(listen_later())
    try:
        await probe_tcp("127.0.0.1", free_port, timeout=3.0, interval=0.05)
    finally:
        server = await listener
        server.close()
        await server.wait_closed()
