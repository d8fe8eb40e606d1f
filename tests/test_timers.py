import asyncio

import pytest

from call_signaling.services.timers import CancelableTimer, Poller


@pytest.mark.asyncio
async def test_timer_fires_once():
    fired = []
    timer = CancelableTimer("test")
    timer.arm(0.01, fired.append, "a")
    assert timer.armed

    await asyncio.sleep(0.05)

    assert fired == ["a"]
    assert not timer.armed


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires():
    fired = []
    timer = CancelableTimer("test")
    timer.arm(0.01, fired.append, "a")

    assert timer.cancel() is True
    assert timer.cancel() is False
    await asyncio.sleep(0.05)

    assert fired == []


@pytest.mark.asyncio
async def test_rearm_replaces_previous_callback():
    fired = []
    timer = CancelableTimer("test")
    timer.arm(0.01, fired.append, "first")
    timer.arm(0.02, fired.append, "second")

    await asyncio.sleep(0.06)

    assert fired == ["second"]


@pytest.mark.asyncio
async def test_failing_callback_is_contained(caplog):
    def boom():
        raise RuntimeError("boom")

    timer = CancelableTimer("exploding")
    timer.arm(0.0, boom)
    await asyncio.sleep(0.01)

    assert "Timer 'exploding' callback failed" in caplog.text


@pytest.mark.asyncio
async def test_poller_keeps_ticking_after_failure():
    calls = []

    async def tick():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first tick fails")

    poller = Poller(tick, 0.01, name="ticker")
    poller.start()
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert len(calls) >= 2
    assert poller.running is False

    seen = len(calls)
    await asyncio.sleep(0.03)
    assert len(calls) == seen


@pytest.mark.asyncio
async def test_poller_initial_delay():
    calls = []

    async def tick():
        calls.append(1)

    poller = Poller(tick, 0.01, initial_delay=0.2)
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    assert calls == []
