"""SQLite checkpoint storage for alarm state."""

import json
import time
from collections.abc import Mapping
from typing import Any

from gcwatch.adapters.storage.sqlite_base import SQLiteStorageBase, _load_json_payload
from gcwatch.core.encoding.records import alarm_state_from_dict, alarm_state_to_dict
from gcwatch.core.exceptions import StoreCorrupted
from gcwatch.core.models import AlarmState

_CHECKPOINT_SCHEMA = """
CREATE TABLE IF NOT EXISTS alarm_states (
    alarm_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""

_UPSERT_STATE = """
INSERT INTO alarm_states (alarm_id, state, payload, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(alarm_id) DO UPDATE SET
    state = excluded.state,
    payload = excluded.payload,
    updated_at = excluded.updated_at
"""

_SELECT_STATES = """
SELECT alarm_id, payload FROM alarm_states ORDER BY alarm_id ASC
"""

_DELETE_MISSING = """
DELETE FROM alarm_states WHERE alarm_id NOT IN (SELECT value FROM json_each(?))
"""

_COUNT_STATES = """
SELECT COUNT(*) FROM alarm_states
"""


def _to_row(state: AlarmState, saved_at: float) -> tuple[Any, ...]:
    return (
        state.alarm_id,
        state.state.value,
        json.dumps(alarm_state_to_dict(state)),
        saved_at,
    )


def _from_row(alarm_id: str, payload: str) -> AlarmState:
    data = _load_json_payload(payload, source=f"alarm_states[{alarm_id}]")
    try:
        return alarm_state_from_dict(data)
    except (KeyError, ValueError, TypeError) as exc:
        raise StoreCorrupted(f"invalid checkpoint for alarm {alarm_id}: {exc}") from exc


class SQLiteCheckpointStorage(SQLiteStorageBase):
    """SQLite implementation of CheckpointStoragePort.

    Each save replaces the full set: alarms missing from the saved mapping
    are deleted, so a checkpoint always matches one configuration
    generation. The breach ring is stored with the state, so hysteresis
    survives restarts.

    Sync methods (save_states_sync, load_states_sync) use the standard
    sqlite3 module for non-async contexts such as shutdown hooks.
    """

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path, _CHECKPOINT_SCHEMA)

    async def save_states(self, states: Mapping[str, AlarmState]) -> None:
        """Persist the given alarm states, replacing earlier copies."""
        saved_at = time.time()
        rows = [_to_row(state, saved_at) for state in states.values()]
        async with self.async_connection() as db:
            await db.executemany(_UPSERT_STATE, rows)
            await db.execute(_DELETE_MISSING, (json.dumps(list(states)),))
            await db.commit()

    async def load_states(self) -> dict[str, AlarmState]:
        """Load every persisted alarm state keyed by alarm id.

        Raises:
            StoreCorrupted: A persisted row cannot be decoded.
        """
        states: dict[str, AlarmState] = {}
        async with self.async_connection() as db:
            async with db.execute(_SELECT_STATES) as cursor:
                async for row in cursor:
                    states[row[0]] = _from_row(row[0], row[1])
        return states

    async def count(self) -> int:
        """Return number of checkpointed alarms."""
        async with self.async_connection() as db:
            async with db.execute(_COUNT_STATES) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    def save_states_sync(self, states: Mapping[str, AlarmState]) -> None:
        """Synchronous save for non-async contexts."""
        saved_at = time.time()
        rows = [_to_row(state, saved_at) for state in states.values()]
        with self.sync_connection() as conn:
            conn.executemany(_UPSERT_STATE, rows)
            conn.execute(_DELETE_MISSING, (json.dumps(list(states)),))
            conn.commit()

    def load_states_sync(self) -> dict[str, AlarmState]:
        """Synchronous load for non-async contexts."""
        with self.sync_connection() as conn:
            cursor = conn.execute(_SELECT_STATES)
            return {row[0]: _from_row(row[0], row[1]) for row in cursor}
