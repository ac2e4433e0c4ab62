"""SQLite-backed event registry: a persistent feed that alerting can poll."""

from datetime import datetime
import json

from waypoint import events as event_module
from waypoint.base_types import EventRegistry
from waypoint.database import SQLiteDatabase
from waypoint.events import WaypointEvent
from waypoint.utils.logging_config import get_logger
from waypoint.utils.timestamps import to_timestamp, utc_now

log = get_logger(__name__)

EVENTS_TABLE_SCHEMA = """
create table if not exists events (
    event_id                  integer primary key autoincrement,
    event_type                text not null,
    job_id                    text,
    event_data                text not null,
    created_at                text not null
);
"""

EVENTS_TYPE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type, created_at);
"""


class SQLiteEventRegistry(EventRegistry):
    """SQLite-backed event registry for persistent event storage."""

    def __init__(self, database: SQLiteDatabase) -> None:
        """
        @param database: The database to store events in; usually shared with the job store
        """
        self.database = database

    def init(self) -> None:
        """Create the events table, if it does not already exist."""

        self.database.execute_script([EVENTS_TABLE_SCHEMA, EVENTS_TYPE_INDEX])

    def register(self, event: WaypointEvent) -> None:
        """Register an event in the event registry.

        @param event: The event to register
        """

        event_type = type(event).__name__
        event_data = json.dumps(event.save())
        job_id = getattr(event, "job_id", None)

        with self.database.transaction() as conn:
            conn.execute(
                "insert into events (event_type, job_id, event_data, created_at) values (?, ?, ?, ?)",
                (event_type, job_id, event_data, to_timestamp(utc_now())),
            )

    def get_events(self, event_type: str | None = None, since: datetime | None = None) -> list[WaypointEvent]:
        """Retrieve events from the registry.

        @param event_type: Optional filter by event class name
        @param since: Optional lower bound on when the event was registered
        @return: List of deserialised event objects
        """

        query = "select event_type, event_data from events where 1=1"
        params: list[str] = []

        if event_type:
            query += " and event_type = ?"
            params.append(event_type)

        if since is not None:
            query += " and created_at >= ?"
            params.append(to_timestamp(since))

        query += " order by event_id"

        with self.database.reading() as conn:
            rows = conn.execute(query, params).fetchall()

        loaded: list[WaypointEvent] = []
        for event_type_name, event_data in rows:
            # Events are all defined in one module, so the class name is enough to find them
            event_class = getattr(event_module, event_type_name, None)
            if not (isinstance(event_class, type) and issubclass(event_class, WaypointEvent)):
                log.warning(f"Skipping event of unknown type {event_type_name}")
                continue

            loaded.append(event_class.load(json.loads(event_data)))

        return loaded
