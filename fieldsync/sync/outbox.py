"""Client-side outbox of observations waiting to be pushed to the server.

Observations recorded while offline are kept here until the server confirms
them. The outbox holds one pending document per identity: recording the same
identity again replaces the pending document, matching the server's
last-write-wins upsert.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..exceptions import ClientInputError
from ..models import IDENTITY_FIELD, identity_key, is_valid_identity

logger = logging.getLogger(__name__)

OUTBOX_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox (
    identity_key TEXT PRIMARY KEY,
    document TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_enqueued ON outbox(enqueued_at);
CREATE INDEX IF NOT EXISTS idx_outbox_synced ON outbox(synced_at);
"""


@dataclass
class OutboxEntry:
    """A pending observation document."""

    key: str
    document: dict[str, Any]
    enqueued_at: datetime
    synced_at: datetime | None = None

    @property
    def identity(self) -> Any:
        return self.document.get(IDENTITY_FIELD)


class ObservationOutbox:
    """SQLite-backed queue of unsynced observation documents."""

    def __init__(self, db_path: str | Path):
        """Initialize the outbox.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(OUTBOX_SCHEMA)
        self._conn.commit()

        logger.info(f"Outbox connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _row_to_entry(self, row: sqlite3.Row) -> OutboxEntry:
        return OutboxEntry(
            key=row["identity_key"],
            document=json.loads(row["document"]),
            enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
            synced_at=(
                datetime.fromisoformat(row["synced_at"]) if row["synced_at"] else None
            ),
        )

    def enqueue(self, document: dict[str, Any]) -> OutboxEntry:
        """Record an observation for the next push.

        Args:
            document: Flat observation document carrying an ``id``.

        Returns:
            The pending OutboxEntry.

        Raises:
            ClientInputError: If the document has no usable identity.
        """
        if not isinstance(document, dict) or not is_valid_identity(
            document.get(IDENTITY_FIELD)
        ):
            raise ClientInputError("Invalid observation: missing ID")

        conn = self._ensure_connected()

        entry = OutboxEntry(
            key=identity_key(document[IDENTITY_FIELD]),
            document=dict(document),
            enqueued_at=datetime.now(),
        )

        conn.execute(
            """
            INSERT INTO outbox (identity_key, document, enqueued_at, synced_at)
            VALUES (?, ?, ?, NULL)
            ON CONFLICT(identity_key) DO UPDATE SET
                document = excluded.document,
                enqueued_at = excluded.enqueued_at,
                synced_at = NULL
            """,
            (entry.key, json.dumps(entry.document), entry.enqueued_at.isoformat()),
        )
        conn.commit()

        logger.debug(f"Enqueued observation {entry.key}")
        return entry

    def get_pending(self, limit: int = 1000) -> list[OutboxEntry]:
        """Get documents not yet confirmed by the server, oldest first."""
        conn = self._ensure_connected()

        cursor = conn.execute(
            """
            SELECT identity_key, document, enqueued_at, synced_at
            FROM outbox
            WHERE synced_at IS NULL
            ORDER BY enqueued_at ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_entry(row) for row in cursor]

    def mark_synced(self, entries: list[OutboxEntry]) -> int:
        """Mark pushed entries as synced.

        An entry re-enqueued after it was read stays pending, since the server
        has not seen its newer document.

        Returns:
            Number of entries updated.
        """
        if not entries:
            return 0

        conn = self._ensure_connected()
        now = datetime.now().isoformat()

        count = 0
        for entry in entries:
            cursor = conn.execute(
                """
                UPDATE outbox
                SET synced_at = ?
                WHERE identity_key = ? AND enqueued_at = ? AND synced_at IS NULL
                """,
                (now, entry.key, entry.enqueued_at.isoformat()),
            )
            count += cursor.rowcount
        conn.commit()

        logger.debug(f"Marked {count} outbox entries as synced")
        return count

    def get_stats(self) -> dict[str, Any]:
        """Get outbox statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}

        cursor = conn.execute("SELECT COUNT(*) FROM outbox")
        stats["total_entries"] = cursor.fetchone()[0]

        cursor = conn.execute("SELECT COUNT(*) FROM outbox WHERE synced_at IS NULL")
        stats["pending_entries"] = cursor.fetchone()[0]

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats

    def cleanup_synced(self, days: int = 30) -> int:
        """Delete synced entries older than the given number of days.

        Returns:
            Number of entries deleted.
        """
        conn = self._ensure_connected()

        cutoff = (datetime.now() - timedelta(days=days)).isoformat()

        cursor = conn.execute(
            """
            DELETE FROM outbox
            WHERE synced_at IS NOT NULL AND synced_at < ?
            """,
            (cutoff,),
        )
        conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} synced outbox entries older than {days} days")

        return deleted
