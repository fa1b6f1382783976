import asyncio

import pytest

from coldstart.supervisor.reaper import IdleReaper


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_idle_backend_is_stopped(make_supervisor, fake_adapter, wait_state):
    supervisor = make_supervisor(idle_timeout=0.2, idle_poll_interval=0.05)
    await supervisor.ensure_ready()
    reaper = supervisor.reaper

    await wait_state(supervisor, "stopped")

    assert fake_adapter.signals == [("unit-1", "terminate")]
    assert supervisor.reaper is None
    await asyncio.sleep(0)
    assert not reaper.running


@pytest.mark.asyncio
async def test_activity_keeps_backend_alive(make_supervisor):
    supervisor = make_supervisor(idle_timeout=0.2, idle_poll_interval=0.05)
    await supervisor.ensure_ready()

    for _ in range(8):
        await asyncio.sleep(0.05)
        supervisor.touch()

    assert supervisor.state == "ready"
    await supervisor.stop()


@pytest.mark.asyncio
async def test_idle_check_uses_idle_timeout(make_supervisor):
    clock = FakeClock(100.0)
    supervisor = make_supervisor(clock=clock, idle_timeout=60, idle_poll_interval=3600)
    await supervisor.ensure_ready()

    clock.now = 150.0
    assert await supervisor._reap_if_idle(1) is False
    assert supervisor.state == "ready"

    clock.now = 161.0
    assert await supervisor._reap_if_idle(1) is True
    assert supervisor.state == "stopped"


@pytest.mark.asyncio
async def test_idle_check_ignores_stale_generation(make_supervisor):
    clock = FakeClock(100.0)
    supervisor = make_supervisor(clock=clock, idle_timeout=60, idle_poll_interval=3600)
    await supervisor.ensure_ready()
    clock.now = 1000.0

    assert await supervisor._reap_if_idle(0) is True

    assert supervisor.state == "ready"
    await supervisor.stop()


@pytest.mark.asyncio
async def test_crashed_unit_is_reset(make_supervisor, fake_adapter):
    supervisor = make_supervisor(idle_poll_interval=3600)
    await supervisor.ensure_ready()

    fake_adapter.crash("unit-1")
    assert await supervisor._reap_if_idle(1) is True

    assert supervisor.state == "stopped"
    assert fake_adapter.cleaned == ["unit-1"]

    await supervisor.ensure_ready()
    assert supervisor.identity == "unit-2"
    assert supervisor.generation == 2
    await supervisor.stop()


@pytest.mark.asyncio
async def test_reaper_survives_failing_check():
    calls = []

    async def check(generation: int) -> bool:
        calls.append(generation)
        if len(calls) == 1:
            raise RuntimeError("docker daemon unavailable")
        return True

    reaper = IdleReaper("app", 7, check, poll_interval=0.01)
    reaper.start()

    for _ in range(100):
        if not reaper.running:
            break
        await asyncio.sleep(0.01)

    assert not reaper.running
    assert calls == [7, 7]


@pytest.mark.asyncio
async def test_reaper_cancel_stops_polling():
    calls = []

    async def check(generation: int) -> bool:
        calls.append(generation)
        return False

    reaper = IdleReaper("app", 1, check, poll_interval=0.01)
    reaper.start()
    await asyncio.sleep(0.05)
    reaper.cancel()
    await asyncio.sleep(0)
    seen = len(calls)
    await asyncio.sleep(0.05)

    assert not reaper.running
    assert len(calls) == seen
