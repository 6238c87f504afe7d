"""
Tests for in-process flush timers and periodic sweeps.
"""

import asyncio

import pytest

from chatorder.services.scheduler import FlushScheduler


class RecordingFlush:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, group_id, token):
        self.calls.append((group_id, token))


class TestFlushTimers:
    """Tests for arm/re-arm behaviour."""

    @pytest.mark.asyncio
    async def test_timer_fires_with_token(self):
        flush = RecordingFlush()
        scheduler = FlushScheduler()
        scheduler.bind(flush)

        scheduler.arm("group-1", "token-a", 0.01)
        assert scheduler.is_armed("group-1")
        await asyncio.sleep(0.15)

        assert flush.calls == [("group-1", "token-a")]
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_rearm_supersedes_pending_timer(self):
        """Only the timer armed for the latest message flushes."""
        flush = RecordingFlush()
        scheduler = FlushScheduler()
        scheduler.bind(flush)

        scheduler.arm("group-1", "token-a", 0.05)
        scheduler.arm("group-1", "token-b", 0.05)
        await asyncio.sleep(0.25)

        assert flush.calls == [("group-1", "token-b")]

    @pytest.mark.asyncio
    async def test_groups_are_independent(self):
        flush = RecordingFlush()
        scheduler = FlushScheduler()
        scheduler.bind(flush)

        scheduler.arm("group-1", "a", 0.01)
        scheduler.arm("group-2", "b", 0.01)
        await asyncio.sleep(0.15)

        assert sorted(flush.calls) == [("group-1", "a"), ("group-2", "b")]

    @pytest.mark.asyncio
    async def test_disabled_scheduler_arms_nothing(self):
        flush = RecordingFlush()
        scheduler = FlushScheduler(enabled=False)
        scheduler.bind(flush)

        scheduler.arm("group-1", "a", 0)
        await asyncio.sleep(0.1)

        assert flush.calls == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_flush_errors_are_contained(self):
        scheduler = FlushScheduler()

        async def failing(group_id, token):
            raise RuntimeError("database down")

        scheduler.bind(failing)
        scheduler.arm("group-1", "a", 0)
        await asyncio.sleep(0.1)

        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_timers(self):
        flush = RecordingFlush()
        scheduler = FlushScheduler()
        scheduler.bind(flush)

        scheduler.arm("group-1", "a", 5)
        await scheduler.stop()
        await asyncio.sleep(0.05)

        assert flush.calls == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_unbound_timer_leaves_flush_to_sweeper(self):
        scheduler = FlushScheduler()

        scheduler.arm("group-1", "token-a", 0)
        await scheduler._fire("group-1", "token-a", 0)

        assert not scheduler.is_armed("group-1")


class TestPeriodicLoops:
    """Tests for the sweep loops started with the application."""

    @pytest.mark.asyncio
    async def test_periodic_callback_runs_until_stopped(self):
        runs = []

        async def sweep():
            runs.append(1)

        scheduler = FlushScheduler()
        scheduler.add_periodic("flush-sweep", sweep, 0.02)
        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        count = len(runs)
        await asyncio.sleep(0.05)

        assert count >= 2
        assert len(runs) == count

    @pytest.mark.asyncio
    async def test_failing_periodic_callback_keeps_looping(self):
        runs = []

        async def sweep():
            runs.append(1)
            raise RuntimeError("boom")

        scheduler = FlushScheduler()
        scheduler.add_periodic("flush-sweep", sweep, 0.02)
        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(runs) >= 2

    @pytest.mark.asyncio
    async def test_disabled_scheduler_starts_no_loops(self):
        runs = []

        async def sweep():
            runs.append(1)

        scheduler = FlushScheduler(enabled=False)
        scheduler.add_periodic("flush-sweep", sweep, 0.01)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert runs == []
