"""
In-process flush timers and periodic sweeps.

Timers are keyed by group id. Re-arming a group cancels the pending timer and
starts a new one carrying the group's latest flush token, so only the timer
for the most recent message can claim the group. Timers are an optimisation.
The durable ``flush_after`` column and the periodic ``flush_due`` sweep
guarantee that a group whose timer died with the process still flushes.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..utils.logging import get_logger

logger = get_logger(__name__)

FlushCallback = Callable[[str, Optional[str]], Awaitable[Any]]
PeriodicCallback = Callable[[], Awaitable[Any]]

# Fire slightly after flush_after so the timer never loses the claim to clock skew
TIMER_MARGIN_SECONDS = 0.05


class FlushScheduler:
    """Owns debounce timers and background sweep loops for one process."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self._flush: Optional[FlushCallback] = None
        self._timers: Dict[str, asyncio.Task] = {}
        self._periodic: List[Tuple[str, PeriodicCallback, float]] = []
        self._loops: List[asyncio.Task] = []

    def bind(self, flush: FlushCallback) -> None:
        """Set the coroutine timers call with (group_id, token)."""
        self._flush = flush

    def add_periodic(self, name: str, callback: PeriodicCallback, interval: float) -> None:
        """Register a loop started by start(), e.g. the flush sweep."""
        self._periodic.append((name, callback, interval))

    @property
    def pending(self) -> int:
        return sum(1 for task in self._timers.values() if not task.done())

    def is_armed(self, group_id: str) -> bool:
        task = self._timers.get(group_id)
        return task is not None and not task.done()

    def arm(self, group_id: str, token: str, delay: float) -> None:
        """
        Schedule a flush of ``group_id`` after ``delay`` seconds.

        Any timer already waiting for the group is cancelled (superseded).
        A timer that has already fired and is flushing is left alone.
        """
        if not self.enabled or self._flush is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; timer not armed", extra={"group_id": group_id})
            return

        existing = self._timers.pop(group_id, None)
        if existing is not None and not existing.done():
            existing.cancel()

        self._timers[group_id] = loop.create_task(
            self._fire(group_id, token, delay), name=f"flush-{group_id}"
        )
        logger.debug("Flush timer armed", extra={"group_id": group_id, "delay": delay})

    async def _fire(self, group_id: str, token: str, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay) + TIMER_MARGIN_SECONDS)

        # Past this point the timer can no longer be superseded
        if self._timers.get(group_id) is asyncio.current_task():
            del self._timers[group_id]

        if self._flush is None:
            logger.warning("Scheduler not bound; flush left to the sweeper", extra={"group_id": group_id})
            return
        try:
            await self._flush(group_id, token)
        except Exception as e:
            logger.error(
                "Timed flush raised",
                extra={"group_id": group_id, "error": str(e)},
                exc_info=True,
            )

    async def _run_periodic(self, name: str, callback: PeriodicCallback, interval: float) -> None:
        while True:
            try:
                await callback()
            except Exception as e:
                logger.error(
                    "Periodic task failed",
                    extra={"task": name, "error": str(e)},
                    exc_info=True,
                )
            await asyncio.sleep(interval)

    async def start(self) -> None:
        if not self.enabled:
            logger.info("Flush scheduler disabled")
            return
        for name, callback, interval in self._periodic:
            self._loops.append(
                asyncio.create_task(self._run_periodic(name, callback, interval), name=name)
            )
        logger.info("Flush scheduler started", extra={"loops": len(self._loops)})

    async def stop(self) -> None:
        """Cancel loops and pending timers. Unflushed groups stay due in the database."""
        tasks = self._loops + list(self._timers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._timers.clear()
        logger.info("Flush scheduler stopped", extra={"cancelled": len(tasks)})
