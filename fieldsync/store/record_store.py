"""SQLite-backed canonical store for synchronized observations."""

import json
import logging
import re
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..exceptions import RecordNotFoundError, StoreError
from ..models import (
    Observation,
    UpsertOperation,
    UpsertResult,
    identity_key,
    is_valid_identity,
)

logger = logging.getLogger(__name__)

# One row per identity: the table is a map, not a log
SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    identity_key TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    payload TEXT NOT NULL,
    date TEXT,
    synced_at TEXT,
    server_timestamp INTEGER
);

CREATE INDEX IF NOT EXISTS idx_{table}_date ON {table}(date);
"""

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _date_column(value: Any) -> str | None:
    """Sortable text for the payload's date field."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


class RecordStore:
    """Keyed collection of observations with upsert-by-identity semantics.

    Upserts replace the whole stored document. Each upsert runs under a lock
    inside a single transaction, so concurrent writers to the same identity
    never lose an update.
    """

    def __init__(self, db_path: str | Path, collection: str = "observations"):
        """Initialize the record store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            collection: Table holding the records.
        """
        if not _TABLE_NAME_RE.match(collection):
            raise ValueError(f"Invalid collection name: {collection!r}")

        self.db_path = Path(db_path).expanduser()
        self.collection = collection
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open the database connection and create the schema.

        Raises:
            StoreError: If the database cannot be opened.
        """
        if self._conn is not None:
            return

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA.format(table=self.collection))
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            self._conn = None
            raise StoreError(f"Cannot open record store at {self.db_path}: {e}") from e

        logger.info(f"RecordStore connected to {self.db_path} ({self.collection})")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _row_to_observation(self, row: sqlite3.Row) -> Observation:
        return Observation(
            identity=json.loads(row["identity"]),
            payload=json.loads(row["payload"]),
            synced_at=(
                datetime.fromisoformat(row["synced_at"]) if row["synced_at"] else None
            ),
            server_timestamp=row["server_timestamp"],
        )

    def ping(self) -> None:
        """Check that the store answers queries.

        Raises:
            StoreError: If the store is unreachable.
        """
        try:
            self._ensure_connected().execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def find_all(self) -> list[Observation]:
        """Return every record, newest ``date`` first.

        Records without a date sort last.
        """
        try:
            cursor = self._ensure_connected().execute(
                f"""
                SELECT identity, payload, synced_at, server_timestamp
                FROM {self.collection}
                ORDER BY date DESC, server_timestamp DESC
                """
            )
            return [self._row_to_observation(row) for row in cursor]
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def find_by_identity(self, identity: Any) -> Observation:
        """Fetch a record by identity.

        Raises:
            RecordNotFoundError: If no record has this identity.
            StoreError: On database failure.
        """
        try:
            row = self._ensure_connected().execute(
                f"""
                SELECT identity, payload, synced_at, server_timestamp
                FROM {self.collection}
                WHERE identity_key = ?
                """,
                (identity_key(identity),),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

        if row is None:
            raise RecordNotFoundError(identity)
        return self._row_to_observation(row)

    def upsert_by_identity(self, observation: Observation) -> UpsertResult:
        """Create or fully replace the record with the observation's identity.

        A payload equal to the stored one is a no-op and reports
        ``UpsertOperation.UNCHANGED``; the stored timestamps are kept.

        Raises:
            StoreError: If the identity is malformed, the payload is not
                JSON-serializable, or the write fails.
        """
        if not is_valid_identity(observation.identity):
            raise StoreError(f"Invalid identity: {observation.identity!r}")

        try:
            identity_json = json.dumps(observation.identity)
            payload_json = json.dumps(observation.payload)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Payload is not serializable: {e}") from e

        key = observation.key
        synced_at = observation.synced_at.isoformat() if observation.synced_at else None

        with self._lock:
            conn = self._ensure_connected()
            try:
                with conn:
                    existing = conn.execute(
                        f"""
                        SELECT identity, payload, synced_at, server_timestamp
                        FROM {self.collection}
                        WHERE identity_key = ?
                        """,
                        (key,),
                    ).fetchone()

                    if existing is None:
                        conn.execute(
                            f"""
                            INSERT INTO {self.collection} (
                                identity_key, identity, payload, date,
                                synced_at, server_timestamp
                            ) VALUES (?, ?, ?, ?, ?, ?)
                            """,
                            (
                                key,
                                identity_json,
                                payload_json,
                                _date_column(observation.date),
                                synced_at,
                                observation.server_timestamp,
                            ),
                        )
                        operation = UpsertOperation.CREATED

                    elif (
                        existing["identity"] == identity_json
                        and json.loads(existing["payload"]) == json.loads(payload_json)
                    ):
                        return UpsertResult(
                            identity=observation.identity,
                            operation=UpsertOperation.UNCHANGED,
                            observation=self._row_to_observation(existing),
                        )

                    else:
                        conn.execute(
                            f"""
                            UPDATE {self.collection}
                            SET identity = ?, payload = ?, date = ?,
                                synced_at = ?, server_timestamp = ?
                            WHERE identity_key = ?
                            """,
                            (
                                identity_json,
                                payload_json,
                                _date_column(observation.date),
                                synced_at,
                                observation.server_timestamp,
                                key,
                            ),
                        )
                        operation = UpsertOperation.UPDATED
            except sqlite3.Error as e:
                raise StoreError(f"Write rejected for {observation.identity!r}: {e}") from e

        logger.debug(f"Upserted {key}: {operation.value}")
        return UpsertResult(
            identity=observation.identity,
            operation=operation,
            observation=observation,
        )

    def delete_by_identity(self, identity: Any) -> None:
        """Delete a record by identity.

        Raises:
            RecordNotFoundError: If no record has this identity.
            StoreError: On database failure.
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                with conn:
                    cursor = conn.execute(
                        f"DELETE FROM {self.collection} WHERE identity_key = ?",
                        (identity_key(identity),),
                    )
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

        if cursor.rowcount == 0:
            raise RecordNotFoundError(identity)

    def count(self) -> int:
        """Number of stored records."""
        try:
            cursor = self._ensure_connected().execute(
                f"SELECT COUNT(*) FROM {self.collection}"
            )
            return cursor.fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
