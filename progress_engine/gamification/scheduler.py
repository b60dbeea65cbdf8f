"""Periodic reconciliation."""

import asyncio
from typing import Optional

import structlog

from progress_engine.gamification.reconciliation import ReconciliationEngine

logger = structlog.get_logger()


class ReconciliationScheduler:
    """Runs ``reconcile_all`` every ``interval`` seconds in the background."""

    def __init__(self, engine: ReconciliationEngine, interval: float):
        self.engine = engine
        self.interval = interval
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="reconciliation-scheduler")
        logger.info("Reconciliation scheduler started", interval=self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation scheduler stopped", runs=self.runs)

    async def run_once(self):
        try:
            summary = await self.engine.reconcile_all()
            logger.info(
                "Scheduled reconciliation finished",
                processed=summary.processed,
                failed=summary.failed,
            )
        except Exception as e:
            # next tick retries; partial batches are corrected then
            logger.exception("Scheduled reconciliation failed", error=str(e))
        finally:
            self.runs += 1

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
