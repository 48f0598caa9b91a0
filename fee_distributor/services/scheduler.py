"""Periodic Trigger — fires the reconciliation driver on a fixed period.

Invariants:
    - Ticks follow a fixed schedule (start + n * period), independent of how
      long a pass takes
    - Each tick starts the pass as its own task; a tick landing on a running
      pass is skipped by the driver, never queued
    - A failing pass never kills the loop
    - stop() cancels the loop and waits for in-flight passes to finish

Design Decisions:
    - Pass tasks are not cancelled on stop: a pass may be waiting on a
      confirmation, and its bookkeeping is bounded by the confirmation timeout
"""

import asyncio
import logging

from fee_distributor.services.reconciliation_driver import ReconciliationDriver

logger = logging.getLogger(__name__)


class PeriodicTrigger:
    """asyncio loop that calls driver.run_pass() every period_seconds."""

    def __init__(self, driver: ReconciliationDriver, period_seconds: float):
        self.driver = driver
        self.period_seconds = period_seconds
        self._loop_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run(), name="periodic-trigger")
        logger.info(f"Periodic trigger started (every {self.period_seconds}s)")

    def fire(self) -> asyncio.Task:
        """Start one pass now, tracked so stop() can wait for it."""
        task = asyncio.create_task(self._guarded_pass(), name="reconciliation-pass")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            self.fire()
            next_tick += self.period_seconds
            now = loop.time()
            if next_tick < now:
                missed = int((now - next_tick) // self.period_seconds) + 1
                logger.warning(f"Trigger loop fell behind; {missed} ticks dropped")
                next_tick += missed * self.period_seconds
            await asyncio.sleep(next_tick - now)

    async def _guarded_pass(self) -> None:
        try:
            await self.driver.run_pass()
        except Exception:
            logger.exception("Pass raised out of the driver")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Periodic trigger stopped")
