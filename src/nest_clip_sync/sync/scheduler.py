"""
Drives the sync and prune cycles on independent timers.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import timedelta

from nest_clip_sync.models import PruneStats
from nest_clip_sync.models import SyncStats
from nest_clip_sync.sync.cycle import SyncCycle
from nest_clip_sync.sync.prune import PruneCycle

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs SyncCycle and PruneCycle on their own intervals.

    Each timer awaits its cycle before scheduling the next tick, so a
    cycle never overlaps itself; ticks missed while a cycle ran long are
    dropped rather than queued.  The two timers are separate tasks, so a
    sync pass and a prune pass may run at the same time.
    """

    def __init__(
        self,
        sync_cycle: SyncCycle,
        prune_cycle: PruneCycle | None,
        check_interval: timedelta,
        prune_interval: timedelta,
        run_once: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sync_cycle = sync_cycle
        self.prune_cycle = prune_cycle
        self.check_interval = check_interval
        self.prune_interval = prune_interval
        self.run_once = run_once
        self._clock = clock
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.sync_runs = 0
        self.prune_runs = 0
        self.last_sync: SyncStats | None = None
        self.last_prune: PruneStats | None = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> SyncStats | None:
        """Run until stopped; in run-once mode, one sync pass and return its stats."""
        if self.run_once:
            once = asyncio.create_task(self._sync(), name="sync-once")
            self._tasks = [once]
            try:
                return await once
            except asyncio.CancelledError:
                if self._stop.is_set():
                    return None
                raise

        self._tasks = [
            asyncio.create_task(
                self._loop("sync", self.check_interval, self._sync), name="sync-timer"
            )
        ]
        if self.prune_cycle is not None and not self.prune_cycle.policy.forever:
            self._tasks.append(
                asyncio.create_task(
                    self._loop("prune", self.prune_interval, self._prune), name="prune-timer"
                )
            )
        else:
            logger.info("Clip pruning disabled (retention is forever)")

        try:
            await asyncio.wait(self._tasks)
        finally:
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return self.last_sync

    def stop(self) -> None:
        """Stop accepting ticks and cancel any cycle in flight."""
        if self._stop.is_set():
            return
        logger.info("Shutting down")
        self._stop.set()
        for task in self._tasks:
            task.cancel()

    async def _sync(self) -> SyncStats:
        self.sync_runs += 1
        self.last_sync = await self.sync_cycle.run()
        return self.last_sync

    async def _prune(self) -> PruneStats:
        self.prune_runs += 1
        self.last_prune = await asyncio.to_thread(self.prune_cycle.run)
        return self.last_prune

    async def _loop(self, name: str, interval: timedelta, job: Callable[[], Awaitable]) -> None:
        period = interval.total_seconds()
        next_due = self._clock()
        while not self._stop.is_set():
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error in %s cycle", name)

            now = self._clock()
            next_due += period
            if next_due <= now:
                skipped = int((now - next_due) // period) + 1
                logger.debug("%s cycle overran; skipping %d tick(s)", name, skipped)
                next_due += skipped * period

            logger.debug("Next %s cycle in %.0fs", name, next_due - now)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=next_due - now)
            except asyncio.TimeoutError:
                pass
