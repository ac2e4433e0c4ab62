"""Tests for Waypoint exceptions"""

import base64
import pickle
import threading

import pytest

from waypoint.exception import (
    InvalidPayloadError,
    MissingJobError,
    PermanentJobError,
    UnknownJobTypeError,
    WaypointError,
    exception_from_text_blob,
    exception_to_text_blob,
    safe_exception_blob,
)


def test_permanent_errors_share_a_base():
    """Test that dispatch failures are permanent, so they are never retried."""
    assert issubclass(UnknownJobTypeError, PermanentJobError)
    assert issubclass(InvalidPayloadError, PermanentJobError)
    assert issubclass(PermanentJobError, WaypointError)


def test_missing_job_error_is_a_key_error_with_a_plain_message():
    err = MissingJobError("No job with ID job-1")

    assert isinstance(err, KeyError)
    assert str(err) == "No job with ID job-1"


def test_exception_blob_keeps_the_traceback():
    """Test that an exception survives the blob round trip along with its traceback."""
    try:
        raise ValueError("bad row 7")
    except ValueError as err:
        blob = exception_to_text_blob(err)

    restored = exception_from_text_blob(blob)

    assert isinstance(restored, ValueError)
    assert str(restored) == "bad row 7"
    assert restored.__traceback__ is not None


def test_exception_from_blob_rejects_non_exceptions():
    blob = base64.b64encode(pickle.dumps({"not": "an exception"})).decode("ascii")

    with pytest.raises(TypeError):
        exception_from_text_blob(blob)


def test_safe_blob_substitutes_unpicklable_exceptions():
    """Test that an exception holding an unpicklable value is stored as a WaypointError."""

    class LockedError(Exception):
        def __init__(self, message):
            super().__init__(message)
            self.lock = threading.Lock()

    restored = exception_from_text_blob(safe_exception_blob(LockedError("held")))

    assert isinstance(restored, WaypointError)
    assert str(restored) == "LockedError: held"
