"""Tests for MemoryEventRegistry"""

from datetime import UTC, datetime, timedelta

from freezegun import freeze_time

from waypoint.event_registry.memory import MemoryEventRegistry
from waypoint.events import JobCompletedEvent, JobEnqueuedEvent, JobFailedPermanentlyEvent


def test_memory_event_registry_initialization():
    """Test that registry starts empty."""
    registry = MemoryEventRegistry()
    assert registry.get_events() == []


def test_memory_event_registry_preserves_order():
    """Test that events are returned in the order they were registered."""
    registry = MemoryEventRegistry()

    event1 = JobEnqueuedEvent(job_id="job-1", job_type="demo", priority=0)
    event2 = JobCompletedEvent(job_id="job-1", job_type="demo", attempt=1, duration_seconds=0.5)
    event3 = JobEnqueuedEvent(job_id="job-2", job_type="demo", priority=5)

    registry.register(event1)
    registry.register(event2)
    registry.register(event3)

    assert registry.get_events() == [event1, event2, event3]


def test_memory_event_registry_filters_by_type():
    registry = MemoryEventRegistry()
    enqueued = JobEnqueuedEvent(job_id="job-1", job_type="demo", priority=0)
    failed = JobFailedPermanentlyEvent(job_id="job-1", job_type="demo", attempts=5, error="boom")

    registry.register(enqueued)
    registry.register(failed)

    assert registry.get_events(event_type="JobFailedPermanentlyEvent") == [failed]
    assert registry.get_events(event_type="NoSuchEvent") == []


def test_memory_event_registry_filters_by_time():
    """Test that only events registered at or after `since` are returned."""
    registry = MemoryEventRegistry()
    start = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

    with freeze_time(start) as frozen:
        old = JobEnqueuedEvent(job_id="job-1", job_type="demo", priority=0)
        registry.register(old)

        frozen.tick(timedelta(hours=2))
        new = JobEnqueuedEvent(job_id="job-2", job_type="demo", priority=0)
        registry.register(new)

    assert registry.get_events(since=start + timedelta(hours=1)) == [new]
    # Naive datetimes are read as UTC
    assert registry.get_events(since=datetime(2025, 1, 1, 13, 0, 0)) == [new]
