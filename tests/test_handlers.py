"""Tests for the handler registry"""

from typing import NotRequired, TypedDict

import pytest

from waypoint.exception import InvalidPayloadError, UnknownJobTypeError
from waypoint.handlers import HandlerRegistry, JobContext


class LeadPayload(TypedDict):
    lead_id: int
    email: str
    notes: NotRequired[str]


def test_decorator_registers_and_returns_the_function():
    handlers = HandlerRegistry()

    @handlers.handler("score_lead")
    def score_lead(payload, context):
        return {"score": 10}

    assert handlers.get("score_lead") is score_lead
    assert "score_lead" in handlers
    assert len(handlers) == 1


def test_duplicate_registration_is_rejected():
    """Test that one job type can only have one handler."""
    handlers = HandlerRegistry()
    handlers.register("demo", lambda payload, context: None)

    with pytest.raises(ValueError):
        handlers.register("demo", lambda payload, context: None)

    with pytest.raises(ValueError):
        handlers.register("", lambda payload, context: None)


def test_unknown_job_type_raises():
    handlers = HandlerRegistry()

    with pytest.raises(UnknownJobTypeError):
        handlers.get("missing")

    with pytest.raises(UnknownJobTypeError):
        handlers.validate("missing", {})


def test_payload_validation_with_typed_dict():
    """Test that payloads are checked against the declared TypedDict."""
    handlers = HandlerRegistry()
    handlers.register("score_lead", lambda payload, context: None, payload_type=LeadPayload)

    handlers.validate("score_lead", {"lead_id": 1, "email": "ada@example.com"})
    handlers.validate("score_lead", {"lead_id": 1, "email": "ada@example.com", "notes": "met at expo"})

    with pytest.raises(InvalidPayloadError):
        handlers.validate("score_lead", {"lead_id": "one", "email": "ada@example.com"})

    with pytest.raises(InvalidPayloadError):
        handlers.validate("score_lead", {"lead_id": 1})


def test_untyped_handlers_accept_any_payload():
    handlers = HandlerRegistry()
    handlers.register("demo", lambda payload, context: None)

    handlers.validate("demo", {"anything": ["goes"]})


def test_job_types_are_sorted():
    handlers = HandlerRegistry()
    for job_type in ("send_email", "enrich_lead", "draft_reply"):
        handlers.register(job_type, lambda payload, context: None)

    assert handlers.job_types() == ["draft_reply", "enrich_lead", "send_email"]


def test_final_attempt():
    context = JobContext(job_id="job-1", job_type="demo", attempt=2, max_attempts=3, worker_id="worker-1")
    assert not context.final_attempt

    context.attempt = 3
    assert context.final_attempt
