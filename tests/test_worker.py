"""Tests for the worker loop"""

from collections import Counter
from datetime import UTC, datetime, timedelta
import time
from typing import TypedDict
from unittest import mock

from freezegun import freeze_time
import pytest

from waypoint.base_types import JobStatus
from waypoint.checkpoint_store import MemoryCheckpointStore
from waypoint.event_registry import MemoryEventRegistry
from waypoint.events import JobClaimedEvent
from waypoint.exception import PermanentJobError, StoreUnavailableError
from waypoint.handlers import HandlerRegistry
from waypoint.pipeline import CheckpointedPipeline
from waypoint.reaper import Reaper
from waypoint.retry import RetryPolicy
from waypoint.worker import Worker, normalise_result

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)

# Failed jobs are immediately claimable again
NO_BACKOFF = RetryPolicy(base_delay_seconds=0.0, cap_delay_seconds=0.0)


class EmailPayload(TypedDict):
    to: str
    subject: str


def flaky_handlers(failures: int) -> tuple[HandlerRegistry, Counter]:
    """A 'demo' handler that fails its first `failures` calls."""
    handlers = HandlerRegistry()
    calls: Counter = Counter()

    @handlers.handler("demo")
    def demo(payload, context):
        calls["demo"] += 1
        if calls["demo"] <= failures:
            raise RuntimeError(f"flaky failure {calls['demo']}")
        return {"attempt": context.attempt}

    return handlers, calls


def test_demo_job_succeeds_on_third_attempt(job_store, event_registry):
    """Test that a job failing twice then succeeding completes with three attempts and no alert."""
    handlers, calls = flaky_handlers(failures=2)
    job_id = job_store.enqueue("demo", {"n": 1}, max_attempts=3)

    report = Worker(job_store, handlers, policy=NO_BACKOFF).run()

    job = job_store.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3
    assert job.result == {"attempt": 3}
    assert calls["demo"] == 3

    assert [outcome.status for outcome in report.outcomes] == [
        JobStatus.PENDING,
        JobStatus.PENDING,
        JobStatus.COMPLETED,
    ]
    assert report.count(JobStatus.COMPLETED) == 1
    assert event_registry.get_events(event_type="JobFailedPermanentlyEvent") == []

    errors = job_store.get_errors(job_id)
    assert [record.attempt for record in errors] == [1, 2]
    assert str(errors[0].error) == "flaky failure 1"


def test_backoff_is_respected_between_worker_runs(job_store):
    """Test that a failed job waits out its backoff before a later run retries it."""
    handlers, calls = flaky_handlers(failures=1)

    with freeze_time(START) as frozen:
        job_id = job_store.enqueue("demo")
        worker = Worker(job_store, handlers)

        first = worker.run()
        assert first.processed == 1
        assert job_store.get(job_id).next_run_at == START + timedelta(seconds=30)

        frozen.tick(timedelta(seconds=10))
        assert worker.run().processed == 0

        frozen.tick(timedelta(seconds=20))
        assert worker.run().processed == 1

    assert job_store.get(job_id).status == JobStatus.COMPLETED
    assert calls["demo"] == 2


def test_job_fails_permanently_after_max_attempts(job_store, event_registry):
    """Test that a job that always fails ends failed, and raises the alert event once."""
    handlers, _ = flaky_handlers(failures=100)
    job_id = job_store.enqueue("demo", max_attempts=3)

    report = Worker(job_store, handlers, policy=NO_BACKOFF).run()

    job = job_store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.last_error == "flaky failure 3"
    assert report.count(JobStatus.FAILED) == 1

    [event] = event_registry.get_events(event_type="JobFailedPermanentlyEvent")
    assert event.job_id == job_id
    assert event.attempts == 3


def test_permanent_error_skips_retries(job_store):
    """Test that PermanentJobError fails the job on its first attempt."""
    handlers = HandlerRegistry()

    @handlers.handler("demo")
    def refuse(payload, context):
        raise PermanentJobError("lead has unsubscribed")

    job_id = job_store.enqueue("demo", max_attempts=5)
    Worker(job_store, handlers, policy=NO_BACKOFF).run()

    job = job_store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.last_error == "lead has unsubscribed"


def test_unknown_job_type_fails_immediately(job_store):
    """Test that a job with no registered handler fails rather than retrying."""
    job_id = job_store.enqueue("mystery")

    report = Worker(job_store, HandlerRegistry()).run()

    job = job_store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "No handler registered for job type mystery" in job.last_error
    assert report.outcomes[0].error == job.last_error


def test_invalid_payload_fails_immediately(job_store):
    """Test that a payload not matching the handler's declared type fails without running it."""
    handlers = HandlerRegistry()
    calls: Counter = Counter()

    @handlers.handler("send_email", payload_type=EmailPayload)
    def send_email(payload, context):
        calls["send_email"] += 1

    bad = job_store.enqueue("send_email", {"to": 5, "subject": "hi"})
    good = job_store.enqueue("send_email", {"to": "ada@example.com", "subject": "hi"})

    Worker(job_store, handlers).run()

    assert job_store.get(bad).status == JobStatus.FAILED
    assert "failed validation" in job_store.get(bad).last_error
    assert job_store.get(good).status == JobStatus.COMPLETED
    assert calls["send_email"] == 1


def test_handler_receives_context(job_store):
    """Test the context passed to handlers describes the attempt."""
    handlers = HandlerRegistry()
    checkpoints = MemoryCheckpointStore()
    seen = []

    @handlers.handler("demo")
    def demo(payload, context):
        seen.append(context)

    job_id = job_store.enqueue("demo", correlation_id="lead-7", max_attempts=1)
    Worker(job_store, handlers, checkpoint_store=checkpoints, worker_id="worker-a").run()

    [context] = seen
    assert context.job_id == job_id
    assert context.job_type == "demo"
    assert context.attempt == 1
    assert context.final_attempt
    assert context.worker_id == "worker-a"
    assert context.correlation_id == "lead-7"
    assert context.checkpoints is checkpoints


def test_results_are_normalised(job_store):
    """Test that non-mapping results are wrapped and stored."""
    handlers = HandlerRegistry()
    handlers.register("text", lambda payload, context: "done")
    handlers.register("nothing", lambda payload, context: None)

    text_id = job_store.enqueue("text")
    nothing_id = job_store.enqueue("nothing")

    Worker(job_store, handlers).run()

    assert job_store.get(text_id).result == {"result": "done"}
    assert job_store.get(nothing_id).result is None


def test_normalise_result():
    moment = datetime(2025, 1, 1, tzinfo=UTC)

    assert normalise_result(None) is None
    assert normalise_result({"count": 3}) == {"count": 3}
    assert normalise_result(42) == {"result": "42"}
    assert normalise_result({"at": moment}) == {"at": str(moment)}
    assert normalise_result({moment: 1, 7: {("a", "b"): [1]}}) == {str(moment): 1, "7": {"('a', 'b')": [1]}}


def test_results_with_non_string_keys_are_stored(job_store):
    """Test that a result keyed by tuples is stored with stringified keys."""
    handlers = HandlerRegistry()
    handlers.register("pairs", lambda payload, context: {("a", "b"): 1})

    job_id = job_store.enqueue("pairs")
    report = Worker(job_store, handlers).run()

    assert report.count(JobStatus.COMPLETED) == 1
    assert job_store.get(job_id).result == {"('a', 'b')": 1}


def test_unstorable_result_fails_the_job(job_store):
    """Test that a result that cannot be stored fails the job without retries, instead of stranding it."""
    handlers = HandlerRegistry()

    @handlers.handler("loop")
    def circular(payload, context):
        result = {}
        result["self"] = result
        return result

    job_id = job_store.enqueue("loop", max_attempts=5)
    report = Worker(job_store, handlers, policy=NO_BACKOFF).run()

    [outcome] = report.outcomes
    assert outcome.status == JobStatus.FAILED

    job = job_store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


def test_max_jobs_limits_a_run(job_store):
    handlers, _ = flaky_handlers(failures=0)
    for _ in range(3):
        job_store.enqueue("demo")

    report = Worker(job_store, handlers).run(max_jobs=2)

    assert report.processed == 2
    assert len(job_store.list_jobs(status=JobStatus.PENDING)) == 1


@pytest.mark.timeout(30)
def test_time_budget_stops_new_claims(job_store):
    """Test that no job is claimed once the budget is spent, but the running one finishes."""
    handlers = HandlerRegistry()

    @handlers.handler("slow")
    def slow(payload, context):
        time.sleep(0.2)
        return {"done": True}

    for _ in range(3):
        job_store.enqueue("slow")

    report = Worker(job_store, handlers, time_budget_seconds=0.1).run()

    assert report.processed == 1
    assert report.count(JobStatus.COMPLETED) == 1
    assert len(job_store.list_jobs(status=JobStatus.PENDING)) == 2


@pytest.mark.timeout(30)
def test_idle_worker_polls_until_budget_is_spent(job_store):
    """Test that with an idle sleep, an empty queue is polled until the budget is spent."""
    handlers, _ = flaky_handlers(failures=0)
    worker = Worker(job_store, handlers, time_budget_seconds=0.3)

    report = worker.run(idle_sleep_seconds=0.01)

    assert report.processed == 0
    assert report.duration_seconds >= 0.3


def test_worker_runs_the_reaper(job_store):
    """Test that each run recovers stuck jobs left by other workers."""
    handlers, _ = flaky_handlers(failures=0)

    with freeze_time(START) as frozen:
        job_id = job_store.enqueue("demo")
        job_store.claim_next("vanished-worker")

        frozen.tick(timedelta(minutes=11))
        report = Worker(job_store, handlers).run()

    assert report.reaped == 1
    assert report.processed == 0
    assert job_store.get(job_id).status == JobStatus.PENDING


def test_stale_claim_outcome_is_dropped(job_store):
    """Test that a job reaped while its handler ran is not completed by the slow worker."""
    handlers = HandlerRegistry()

    @handlers.handler("demo")
    def reaped_midway(payload, context):
        Reaper(job_store).reap(now=datetime.now(UTC) + timedelta(hours=1))
        return {"done": True}

    job_id = job_store.enqueue("demo")
    report = Worker(job_store, handlers).run()

    [outcome] = report.outcomes
    assert outcome.status is None

    job = job_store.get(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.result is None


def test_store_unavailable_ends_the_run(job_store):
    """Test that a store outage ends the run cleanly rather than raising."""
    handlers, _ = flaky_handlers(failures=0)

    with mock.patch.object(job_store, "claim_next", side_effect=StoreUnavailableError("database is locked")):
        report = Worker(job_store, handlers).run()

    assert report.store_unavailable
    assert report.processed == 0


class ClaimEventsUnavailable(MemoryEventRegistry):
    """Records every event except claims."""

    def register(self, event):
        if isinstance(event, JobClaimedEvent):
            raise StoreUnavailableError("database is locked")
        super().register(event)


class EventsUnavailable(MemoryEventRegistry):
    def register(self, event):
        raise StoreUnavailableError("database is locked")


def test_event_registry_outage_does_not_strand_claims(job_store):
    """Test that a claimed job is still run when its claim event cannot be recorded."""
    registry = ClaimEventsUnavailable()
    job_store.event_registry = registry
    handlers, _ = flaky_handlers(failures=0)

    job_id = job_store.enqueue("demo")
    report = Worker(job_store, handlers).run()

    assert not report.store_unavailable
    [outcome] = report.outcomes
    assert outcome.status == JobStatus.COMPLETED
    assert job_store.get(job_id).status == JobStatus.COMPLETED
    assert registry.get_events(event_type="JobClaimedEvent") == []
    assert len(registry.get_events(event_type="JobCompletedEvent")) == 1


def test_event_registry_outage_still_reports_failures(job_store):
    """Test that outcomes are reported from the store even when no event can be recorded."""
    job_store.event_registry = EventsUnavailable()
    handlers, _ = flaky_handlers(failures=100)

    job_id = job_store.enqueue("demo", max_attempts=2)
    report = Worker(job_store, handlers, policy=NO_BACKOFF).run()

    assert [outcome.status for outcome in report.outcomes] == [JobStatus.PENDING, JobStatus.FAILED]
    assert job_store.get(job_id).status == JobStatus.FAILED


def test_pipeline_handler_resumes_from_checkpoints(job_store):
    """Test a handler that runs a checkpointed pipeline only repeats the step that failed."""
    handlers = HandlerRegistry()
    checkpoints = MemoryCheckpointStore()
    calls: Counter = Counter()

    def research(data):
        calls["research"] += 1
        return {"facts": ["founded 1843"]}

    def draft(data):
        calls["draft"] += 1
        if calls["draft"] == 1:
            raise RuntimeError("model overloaded")
        return {"text": f"Did you know: {data['research']['facts'][0]}"}

    pipeline = CheckpointedPipeline([("research", research), ("draft", draft)], checkpoints)

    @handlers.handler("outreach")
    def outreach(payload, context):
        result = pipeline.run(context.job_id, payload)
        return result.data["draft"]

    job_id = job_store.enqueue("outreach", {"lead": "ada"})
    Worker(job_store, handlers, policy=NO_BACKOFF, checkpoint_store=checkpoints).run()

    job = job_store.get(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2
    assert job.result == {"text": "Did you know: founded 1843"}
    assert calls == Counter({"research": 1, "draft": 2})


def test_time_budget_must_be_positive(job_store):
    with pytest.raises(ValueError):
        Worker(job_store, HandlerRegistry(), time_budget_seconds=0)
