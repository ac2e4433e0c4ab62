from datetime import datetime
from threading import Lock

from waypoint.base_types import EventRegistry
from waypoint.events import WaypointEvent
from waypoint.utils.timestamps import as_utc, utc_now


class MemoryEventRegistry(EventRegistry):
    """Keep track of queue events in memory."""

    events: list[tuple[datetime, WaypointEvent]]

    def __init__(self) -> None:
        self.events = []
        self._lock = Lock()

    def register(self, event: WaypointEvent) -> None:
        """Register an event in the event registry."""

        with self._lock:
            self.events.append((utc_now(), event))

    def get_events(self, event_type: str | None = None, since: datetime | None = None) -> list[WaypointEvent]:
        since = as_utc(since) if since is not None else None

        with self._lock:
            return [
                event
                for created_at, event in self.events
                if (event_type is None or type(event).__name__ == event_type)
                and (since is None or created_at >= since)
            ]
