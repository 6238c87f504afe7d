"""
Shared fixtures: an in-memory Supabase, a controllable clock, one seeded
tenant with a Meta number and a BSP instance, and a pipeline wired to both.
"""

from datetime import datetime, timezone

import pytest

from chatorder.services.pipeline import IngestionPipeline, build_pipeline

from .factories import seed_tenant
from .fakes import FakeClock, FakeSupabase


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(clock: FakeClock) -> FakeSupabase:
    """FakeSupabase seeded with one fully configured tenant."""
    supabase = FakeSupabase()
    seed_tenant(supabase, clock)
    return supabase


@pytest.fixture
def pipeline(db: FakeSupabase, clock: FakeClock) -> IngestionPipeline:
    built = build_pipeline(db, clock)
    # Tests drive flushes through the sweeper with the fake clock
    built.scheduler.enabled = False
    return built
