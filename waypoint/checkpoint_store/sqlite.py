"""SQLite-backed checkpoint store. One row per (owner, step), never a growing blob."""

from collections.abc import Iterator
import json
from typing import Any

from waypoint.base_types import Checkpoint, CheckpointStore
from waypoint.database import SQLiteDatabase
from waypoint.utils.logging_config import get_logger
from waypoint.utils.timestamps import from_timestamp, to_timestamp, utc_now

log = get_logger(__name__)

CHECKPOINTS_TABLE_SCHEMA = """
create table if not exists checkpoints (
    owner_id                  text not null,
    step_name                 text not null,
    data                      text not null,
    written_at                text not null,
    primary key (owner_id, step_name)
);
"""

CHECKPOINTS_OWNER_INDEX = """
CREATE INDEX IF NOT EXISTS idx_checkpoints_owner ON checkpoints(owner_id, written_at);
"""


class SQLiteCheckpointStore(CheckpointStore):
    def __init__(self, database: SQLiteDatabase) -> None:
        self.database = database

    def init(self) -> None:
        """Create the checkpoint table, if it does not already exist."""

        log.debug(f"Initialising checkpoint store in {self.database.db_path}")
        self.database.execute_script([CHECKPOINTS_TABLE_SCHEMA, CHECKPOINTS_OWNER_INDEX])

    def get(self, owner_id: str, step_name: str) -> Checkpoint | None:
        with self.database.reading() as conn:
            row = conn.execute(
                "select data, written_at from checkpoints where owner_id = ? and step_name = ?",
                (owner_id, step_name),
            ).fetchone()

        if row is None:
            return None

        data, written_at = row
        return Checkpoint(
            owner_id=owner_id,
            step_name=step_name,
            data=json.loads(data),
            written_at=from_timestamp(written_at),  # type: ignore[arg-type]
        )

    def put(self, owner_id: str, step_name: str, data: Any) -> Checkpoint:
        log.debug(f"Checkpointing step {step_name} for {owner_id}")

        serialised = json.dumps(data)
        written_at = utc_now()

        with self.database.transaction() as conn:
            conn.execute(
                """
                insert into checkpoints (owner_id, step_name, data, written_at)
                values (?, ?, ?, ?)
                on conflict(owner_id, step_name) do update set data = excluded.data, written_at = excluded.written_at;
                """,
                (owner_id, step_name, serialised, to_timestamp(written_at)),
            )

        return Checkpoint(owner_id=owner_id, step_name=step_name, data=json.loads(serialised), written_at=written_at)

    def steps(self, owner_id: str) -> Iterator[Checkpoint]:
        with self.database.reading() as conn:
            rows = conn.execute(
                "select step_name, data, written_at from checkpoints where owner_id = ? order by written_at, rowid",
                (owner_id,),
            ).fetchall()

        for step_name, data, written_at in rows:
            yield Checkpoint(
                owner_id=owner_id,
                step_name=step_name,
                data=json.loads(data),
                written_at=from_timestamp(written_at),  # type: ignore[arg-type]
            )

    def clear(self, owner_id: str) -> int:
        log.debug(f"Clearing checkpoints for {owner_id}")

        with self.database.transaction() as conn:
            cursor = conn.execute("delete from checkpoints where owner_id = ?", (owner_id,))
            return cursor.rowcount
