"""Timestamps are stored as fixed-width UTC ISO-8601 strings, so they sort lexically in SQL."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_timestamp(moment: datetime) -> str:
    """Format a datetime for storage. Naive datetimes are taken to be UTC."""

    return as_utc(moment).isoformat(timespec="microseconds")


def from_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


def as_utc(moment: datetime) -> datetime:
    """Normalise a datetime to UTC, so naive and aware values compare."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)

    return moment.astimezone(UTC)
