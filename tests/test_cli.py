"""Tests for the waypoint command line"""

from datetime import UTC, datetime

from click.testing import CliRunner
from freezegun import freeze_time
import pytest

from waypoint.base_types import JobStatus
from waypoint.cli import main
from waypoint.database import SQLiteDatabase
from waypoint.event_registry import SQLiteEventRegistry
from waypoint.job_store import SQLiteJobStore
from waypoint.retry import RetryPolicy

# Keep the caller's environment out of the config
CLEAN_ENV = {"WAYPOINT_DB_PATH": None, "WAYPOINT_LOG_LEVEL": None, "WAYPOINT_MAX_ATTEMPTS": None}

POLICY = RetryPolicy()


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(main, ["--db", db_path, *args], env=CLEAN_ENV)

    return invoke


@pytest.fixture
def seeded_store(db_path):
    """A store on the CLI's database file, for arranging state the CLI then reads."""
    database = SQLiteDatabase(db_path)
    registry = SQLiteEventRegistry(database)
    registry.init()
    job_store = SQLiteJobStore(database, event_registry=registry)
    job_store.init()
    yield job_store
    database.close()


def test_enqueue_prints_the_job_id(invoke, seeded_store):
    """Test enqueueing a job with options from the command line."""
    result = invoke("enqueue", "send_email", "--payload", '{"to": "ada@example.com"}', "--priority", "4")

    assert result.exit_code == 0, result.output
    job_id = result.output.strip()

    job = seeded_store.get(job_id)
    assert job.job_type == "send_email"
    assert job.payload == {"to": "ada@example.com"}
    assert job.priority == 4
    assert job.status == JobStatus.PENDING


def test_enqueue_uses_configured_max_attempts(db_path, seeded_store):
    runner = CliRunner()
    result = runner.invoke(
        main, ["--db", db_path, "enqueue", "demo"], env={**CLEAN_ENV, "WAYPOINT_MAX_ATTEMPTS": "7"}
    )

    assert result.exit_code == 0, result.output
    assert seeded_store.get(result.output.strip()).max_attempts == 7


def test_enqueue_rejects_bad_payloads(invoke):
    result = invoke("enqueue", "demo", "--payload", "{not json")
    assert result.exit_code != 0
    assert "--payload" in result.output

    result = invoke("enqueue", "demo", "--payload", "[1, 2]")
    assert result.exit_code != 0
    assert "JSON object" in result.output


def test_cancel(invoke, seeded_store):
    """Test cancelling a pending job, then refusing to cancel it twice."""
    job_id = seeded_store.enqueue("demo")

    result = invoke("cancel", job_id)
    assert result.exit_code == 0, result.output
    assert f"✓ {job_id} cancelled" in result.output
    assert seeded_store.get(job_id).status == JobStatus.CANCELLED

    result = invoke("cancel", job_id)
    assert result.exit_code == 1
    assert "is cancelled; only pending jobs can be cancelled" in result.output


def test_cancel_missing_job(invoke, seeded_store):
    result = invoke("cancel", "demo/no-such-job")

    assert result.exit_code == 1
    assert "demo/no-such-job" in result.output


def test_requeue_failed_job(invoke, seeded_store):
    """Test that requeueing a failed job prints the ID of a fresh pending job."""
    job_id = seeded_store.enqueue("demo", max_attempts=1)
    job = seeded_store.claim_next("worker-1")
    seeded_store.fail(job_id, job.attempts, RuntimeError("boom"), POLICY)

    result = invoke("requeue", job_id)

    assert result.exit_code == 0, result.output
    new_job = seeded_store.get(result.output.strip())
    assert new_job.status == JobStatus.PENDING
    assert new_job.parent_job_id == job_id


def test_requeue_rejects_jobs_that_have_not_failed(invoke, seeded_store):
    job_id = seeded_store.enqueue("demo")

    result = invoke("requeue", job_id)

    assert result.exit_code == 1
    assert "✗" in result.output


def test_show_lists_errors(invoke, seeded_store):
    job_id = seeded_store.enqueue("demo", max_attempts=2)
    job = seeded_store.claim_next("worker-1")
    seeded_store.fail(job_id, job.attempts, RuntimeError("smtp timeout"), POLICY)

    result = invoke("show", job_id, "--errors")

    assert result.exit_code == 0, result.output
    assert "pending" in result.output
    assert "attempt 1 at" in result.output
    assert "smtp timeout" in result.output


def test_stats(invoke, seeded_store):
    seeded_store.enqueue("demo")
    seeded_store.enqueue("demo")

    result = invoke("stats", "--hours", "1")

    assert result.exit_code == 0, result.output
    assert "demo" in result.output
    assert "last 1h" in result.output


def test_failed_lists_permanent_failures(invoke, seeded_store):
    job_id = seeded_store.enqueue("demo", max_attempts=1)
    job = seeded_store.claim_next("worker-1")
    seeded_store.fail(job_id, job.attempts, RuntimeError("boom"), POLICY)

    result = invoke("failed")

    assert result.exit_code == 0, result.output
    assert "boom" in result.output


def test_failed_with_nothing_failed(invoke, seeded_store):
    result = invoke("failed")

    assert result.exit_code == 0
    assert "No failed jobs." in result.output


def test_reap_recovers_stuck_jobs(invoke, seeded_store):
    """Test the reap command against a job claimed long ago by a worker that vanished."""
    with freeze_time(datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)):
        job_id = seeded_store.enqueue("demo")
        seeded_store.claim_next("vanished-worker")

    result = invoke("reap")

    assert result.exit_code == 0, result.output
    assert f"{job_id} -> pending" in result.output
    assert "✓ reaped 1 job(s)" in result.output


def test_version():
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert "waypoint" in result.output
