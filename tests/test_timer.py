"""Tests for the countdown: single ticking task, restart from inside a tick."""
import asyncio
import pytest

from core.timer import Countdown


class TestCountdown:

    @pytest.mark.asyncio
    async def test_ticks_until_cancelled(self):
        ticks = []

        async def on_tick():
            ticks.append(1)

        countdown = Countdown(on_tick, interval=0.005)
        countdown.start()
        await asyncio.sleep(0.05)
        countdown.cancel()
        seen = len(ticks)
        await asyncio.sleep(0.03)

        assert seen > 0
        assert len(ticks) == seen
        assert not countdown.running

    @pytest.mark.asyncio
    async def test_restart_keeps_one_loop(self):
        ticks = []

        async def on_tick():
            ticks.append(1)

        countdown = Countdown(on_tick, interval=0.01)
        countdown.start()
        countdown.start()
        countdown.start()
        await asyncio.sleep(0.055)
        countdown.cancel()
        assert len(ticks) <= 6

    @pytest.mark.asyncio
    async def test_restart_from_inside_tick(self):
        generations = []
        countdown = None

        async def on_tick():
            generations.append(countdown.generation)
            if len(generations) == 1:
                countdown.start()
            elif len(generations) == 3:
                countdown.cancel()

        countdown = Countdown(on_tick, interval=0.005)
        countdown.start()
        await asyncio.sleep(0.08)

        assert len(generations) == 3
        assert generations[0] < generations[1] == generations[2]
        assert not countdown.running

    @pytest.mark.asyncio
    async def test_tick_errors_logged_not_fatal(self):
        calls = []

        async def on_tick():
            calls.append(1)
            raise RuntimeError("boom")

        countdown = Countdown(on_tick, interval=0.005)
        countdown.start()
        await asyncio.sleep(0.03)
        countdown.cancel()
        assert len(calls) > 1
