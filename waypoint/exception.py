"""Exceptions used throughout Waypoint."""

import base64
import pickle

from tblib import pickling_support

pickling_support.install()


class WaypointError(Exception):
    """Base exception for Waypoint-related errors."""


class RetryableJobError(WaypointError):
    """A handler failed in a way that is worth retrying later."""


class PermanentJobError(WaypointError):
    """A handler failed, and retrying will not help. The job fails immediately."""


class UnknownJobTypeError(PermanentJobError):
    """No handler is registered for the job's type."""


class InvalidPayloadError(PermanentJobError):
    """The job payload does not match the type its handler declared."""


class JobTimedOutError(WaypointError):
    """A job was left in processing past the stuck threshold and was reaped."""


class MissingJobError(WaypointError, KeyError):
    """No job with the requested ID exists."""

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class InvalidTransitionError(WaypointError):
    """The requested status change is not allowed from the job's current status."""


class StoreUnavailableError(WaypointError):
    """The backing store could not be reached; the operation may succeed if retried."""


def exception_to_text_blob(exception: BaseException) -> str:
    """Serialize an exception, including its traceback, to a text blob."""

    pickled = pickle.dumps(exception, protocol=pickle.HIGHEST_PROTOCOL)

    return base64.b64encode(pickled).decode("ascii")


def exception_from_text_blob(blob: str) -> BaseException:
    """Deserialize an exception from a text blob."""

    pickled = base64.b64decode(blob.encode("ascii"))
    restored = pickle.loads(pickled)

    if not isinstance(restored, BaseException):
        raise TypeError(f"Unpickled object is not an exception: {type(restored)!r}")

    return restored


def safe_exception_blob(exception: BaseException) -> str:
    """Serialize an exception; exceptions that refuse to pickle are stored as a WaypointError
    carrying their type and message."""

    try:
        return exception_to_text_blob(exception)
    except (pickle.PicklingError, TypeError, AttributeError):
        substitute = WaypointError(f"{type(exception).__name__}: {exception}")
        return exception_to_text_blob(substitute)
