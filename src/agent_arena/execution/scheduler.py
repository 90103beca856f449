"""
Tick scheduler for arena sessions.

A single asyncio task fires every decision interval and runs one round at a
time. End conditions are checked before each round, so a stop, the deadline
or the death of every agent ends the session at a round boundary.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..competition.session import EndReason

logger = logging.getLogger(__name__)

RoundCallback = Callable[[], Awaitable[None]]
EndCheck = Callable[[], Optional[EndReason]]
EndCallback = Callable[[EndReason], Awaitable[object]]


class TickScheduler:
    """
    Drives rounds for one session.

    ``check_end`` reports the deadline and all-dead conditions; the stop
    request is tracked here and always takes priority. ``on_end`` is awaited
    from the timer loop when a round boundary finds an end condition.
    """

    def __init__(
        self,
        interval_ms: int,
        run_round: RoundCallback,
        check_end: EndCheck,
        on_end: EndCallback,
    ):
        self.interval_ms = interval_ms
        self.run_round = run_round
        self.check_end = check_end
        self.on_end = on_end
        self.rounds_run = 0
        self.failed_rounds = 0
        self._stop_requested = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._round_lock = asyncio.Lock()
        self._round_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def start(self):
        if self.is_running:
            logger.warning("Tick scheduler is already running")
            return
        self._stop_requested = False
        self._resume.set()
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Tick scheduler started, interval {self.interval_ms}ms")

    def pause(self):
        self._resume.clear()
        logger.info("Tick scheduler paused")

    def resume(self):
        self._resume.set()
        logger.info("Tick scheduler resumed")

    async def _loop(self):
        interval = self.interval_ms / 1000
        while not self._stop_requested:
            await asyncio.sleep(interval)
            await self._resume.wait()
            if self._stop_requested:
                break

            reason = await self.run_once()
            if reason is None:
                continue
            if reason != EndReason.STOPPED:
                logger.info(f"End condition reached: {reason.value}")
                await self.on_end(reason)
            break

    def _end_reason(self) -> Optional[EndReason]:
        if self._stop_requested:
            return EndReason.STOPPED
        return self.check_end()

    async def run_once(self) -> Optional[EndReason]:
        """
        Check end conditions, then run one round if none applies.

        Returns:
            The end reason that prevented the round, or None after a round
        """
        async with self._round_lock:
            reason = self._end_reason()
            if reason is not None:
                return reason

            task = asyncio.create_task(self.run_round())
            self._round_task = task
            try:
                await asyncio.wait({task})
            finally:
                if task.done():
                    self._round_task = None

            if task.cancelled():
                logger.warning(f"Round {self.rounds_run + 1} was cancelled")
            elif task.exception() is not None:
                self.failed_rounds += 1
                logger.error(f"Round {self.rounds_run + 1} failed: {task.exception()}")
            else:
                self.rounds_run += 1
            return None

    async def shutdown(self, grace_seconds: float = 30.0):
        """
        Stop the timer loop, letting an in-flight round finish within the grace period.

        Safe to call from inside the loop (for example from ``on_end``); the
        loop task is then left to return on its own.
        """
        self._stop_requested = True
        self._resume.set()
        current = asyncio.current_task()

        task = self._round_task
        if task is not None and not task.done() and task is not current:
            done, _ = await asyncio.wait({task}, timeout=grace_seconds)
            if not done:
                logger.warning(f"Round still running after {grace_seconds}s, cancelling it")
                task.cancel()
                await asyncio.wait({task})

        loop_task = self._loop_task
        if loop_task is not None and loop_task is not current and not loop_task.done():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        logger.info(f"Tick scheduler stopped after {self.rounds_run} rounds")
