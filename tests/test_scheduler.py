"""
Tests for the tick scheduler.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from agent_arena.competition.session import EndReason
from agent_arena.execution.scheduler import TickScheduler


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until ``predicate()`` is true or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestTickScheduler:
    """Timer loop, pause and shutdown."""

    @pytest.mark.asyncio
    async def test_rounds_run_until_end_condition(self):
        """check_end is consulted before every round; on_end gets the reason."""
        rounds = []
        on_end = AsyncMock()

        async def run_round():
            rounds.append(len(rounds) + 1)

        def check_end():
            return EndReason.DEADLINE if len(rounds) >= 3 else None

        scheduler = TickScheduler(10, run_round, check_end, on_end)
        scheduler.start()

        await wait_until(lambda: on_end.await_count == 1)

        assert rounds == [1, 2, 3]
        assert scheduler.rounds_run == 3
        on_end.assert_awaited_once_with(EndReason.DEADLINE)
        await wait_until(lambda: not scheduler.is_running)

    @pytest.mark.asyncio
    async def test_pause_blocks_rounds(self):
        run_round = AsyncMock()
        scheduler = TickScheduler(10, run_round, lambda: None, AsyncMock())
        scheduler.start()
        await wait_until(lambda: run_round.await_count >= 1)

        scheduler.pause()
        await asyncio.sleep(0.03)
        paused_count = run_round.await_count
        await asyncio.sleep(0.05)

        assert scheduler.is_paused
        assert run_round.await_count == paused_count

        scheduler.resume()
        await wait_until(lambda: run_round.await_count > paused_count)
        await scheduler.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_failed_round_is_counted_and_loop_continues(self):
        """A round that raises does not stop the session."""
        calls = []

        async def run_round():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        scheduler = TickScheduler(10, run_round, lambda: None, AsyncMock())
        scheduler.start()

        await wait_until(lambda: scheduler.rounds_run >= 2)

        assert scheduler.failed_rounds == 1
        await scheduler.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_round_within_grace(self):
        finished = []

        async def run_round():
            await asyncio.sleep(0.05)
            finished.append(True)

        scheduler = TickScheduler(60_000, run_round, lambda: None, AsyncMock())
        round_task = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0.01)

        await scheduler.shutdown(grace_seconds=1.0)

        assert await round_task is None
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_round_after_grace(self):
        """A round still running after the grace period is cancelled."""
        async def run_round():
            await asyncio.sleep(10)

        scheduler = TickScheduler(60_000, run_round, lambda: None, AsyncMock())
        round_task = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0.01)

        await scheduler.shutdown(grace_seconds=0.02)

        assert await round_task is None
        assert scheduler.rounds_run == 0
        assert scheduler.failed_rounds == 0

    @pytest.mark.asyncio
    async def test_stop_takes_priority(self):
        """After shutdown no further round starts."""
        run_round = AsyncMock()
        scheduler = TickScheduler(60_000, run_round, lambda: EndReason.DEADLINE, AsyncMock())

        await scheduler.shutdown(0.1)

        assert scheduler.stop_requested
        assert await scheduler.run_once() == EndReason.STOPPED
        run_round.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_condition_prevents_round(self):
        run_round = AsyncMock()
        scheduler = TickScheduler(60_000, run_round, lambda: EndReason.ALL_DEAD, AsyncMock())

        assert await scheduler.run_once() == EndReason.ALL_DEAD
        run_round.assert_not_awaited()
