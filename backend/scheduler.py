"""
Sweep Scheduler - runs the replication sweep on a fixed interval.

Sweeps never overlap: the periodic loop and on-demand triggers (the
check_and_replicate action) share one lock, and a trigger that arrives
mid-sweep is refused rather than queued.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Optional

from replication_engine import ReplicationEngine, SweepResult

logger = logging.getLogger(__name__)


class SweepInProgress(Exception):
    """A sweep is already running"""


class SweepScheduler:

    def __init__(self, engine: ReplicationEngine, interval_sec: float = 60.0):
        self.engine = engine
        self.interval_sec = interval_sec

        self._lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Stats
        self.runs = 0
        self.errors = 0
        self.last_run_at: Optional[str] = None
        self.last_trigger: Optional[str] = None
        self.last_result: Optional[SweepResult] = None
        self.last_error: Optional[str] = None

    @property
    def is_sweeping(self) -> bool:
        return self._lock.locked()

    async def run_once(self, trigger: str = "manual") -> SweepResult:
        """
        Run a single sweep now.

        Raises:
            SweepInProgress: another sweep has not finished
        """
        if self._lock.locked():
            raise SweepInProgress("A replication sweep is already running")

        async with self._lock:
            self.last_trigger = trigger
            self.last_run_at = datetime.now(timezone.utc).isoformat()
            try:
                result = await self.engine.check_and_replicate_trades()
            except Exception as e:
                self.errors += 1
                self.last_error = str(e)
                raise
            finally:
                self.runs += 1

        self.last_result = result
        self.last_error = None
        return result

    async def start(self):
        """Run sweeps every interval until stopped"""
        if self._running:
            return

        self._running = True
        logger.info(f"[Scheduler] Starting sweeps every {self.interval_sec}s")

        while self._running:
            try:
                await self.run_once(trigger="scheduled")
            except SweepInProgress:
                logger.info("[Scheduler] Previous sweep still running, skipping this tick")
            except Exception as e:
                logger.error(f"[Scheduler] Sweep error: {e}")

            await asyncio.sleep(self.interval_sec)

    async def stop(self):
        """Stop the loop and wait for the background task to finish"""
        self._running = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("[Scheduler] Stopped")

    def start_background(self) -> asyncio.Task:
        """Start the loop as a task on the running event loop"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start())
        return self._task

    def get_status(self) -> dict:
        last = self.last_result
        return {
            "running": self._running,
            "sweeping": self.is_sweeping,
            "interval_sec": self.interval_sec,
            "runs": self.runs,
            "errors": self.errors,
            "last_run_at": self.last_run_at,
            "last_trigger": self.last_trigger,
            "last_error": self.last_error,
            "last_result": {
                "checked_at": last.checked_at,
                "traders_checked": last.traders_checked,
                "total_trades": last.total_trades,
                "trader_errors": last.errors,
            } if last else None,
            "engine": self.engine.get_stats(),
        }
