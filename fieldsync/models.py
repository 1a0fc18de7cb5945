"""Observation records and reconciliation result types."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

# Wire name of the identity field in client documents
IDENTITY_FIELD = "id"

# Fields owned by the server; client-supplied values are overwritten on write
SYNCED_AT_FIELD = "syncedAt"
SERVER_TIMESTAMP_FIELD = "serverTimestamp"
SERVER_FIELDS = (SYNCED_AT_FIELD, SERVER_TIMESTAMP_FIELD)


def is_valid_identity(value: Any) -> bool:
    """Check whether a value can be used as a record identity.

    Identities are integers or non-blank strings. Booleans are rejected even
    though they are ints in Python.
    """
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, str):
        return bool(value.strip())
    return False


def identity_key(identity: Any) -> str:
    """Canonical text key for an identity (``42`` and ``"42"`` share a key)."""
    return str(identity).strip()


@dataclass
class Observation:
    """A single field observation, the unit of synchronization."""

    identity: Any
    payload: dict[str, Any] = field(default_factory=dict)
    synced_at: datetime | None = None
    server_timestamp: int | None = None

    @property
    def key(self) -> str:
        return identity_key(self.identity)

    @property
    def date(self) -> Any:
        """Client-side date field used for listing order, if present."""
        return self.payload.get("date")

    def stamped(self, synced_at: datetime, server_timestamp: int) -> "Observation":
        """Return a copy carrying fresh server timestamps."""
        return replace(
            self,
            payload=dict(self.payload),
            synced_at=synced_at,
            server_timestamp=server_timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the flat wire document."""
        data: dict[str, Any] = {IDENTITY_FIELD: self.identity}
        data.update(self.payload)
        data[SYNCED_AT_FIELD] = self.synced_at.isoformat() if self.synced_at else None
        data[SERVER_TIMESTAMP_FIELD] = self.server_timestamp
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Observation":
        """Create from a flat wire document.

        Every key other than the identity and the server-owned fields is kept
        in the payload untouched.
        """
        payload = {
            k: v
            for k, v in data.items()
            if k != IDENTITY_FIELD and k not in SERVER_FIELDS
        }
        synced_at = None
        if isinstance(data.get(SYNCED_AT_FIELD), str):
            try:
                synced_at = datetime.fromisoformat(data[SYNCED_AT_FIELD])
            except ValueError:
                synced_at = None
        return cls(
            identity=data.get(IDENTITY_FIELD),
            payload=payload,
            synced_at=synced_at,
            server_timestamp=data.get(SERVER_TIMESTAMP_FIELD),
        )


class UpsertOperation(Enum):
    """Outcome of an upsert-by-identity."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"  # Identical payload already stored, no write


@dataclass
class UpsertResult:
    """Result of reconciling a single record."""

    identity: Any
    operation: UpsertOperation
    observation: Observation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.identity, "operation": self.operation.value}


@dataclass
class RecordError:
    """A record that failed inside a batch."""

    identity: Any
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.identity, "error": self.error}


@dataclass
class BatchResult:
    """Aggregated per-record report for a reconciled batch.

    Outcomes and errors are kept in input order.
    """

    success: int = 0
    failed: int = 0
    errors: list[RecordError] = field(default_factory=list)
    outcomes: list[UpsertResult] = field(default_factory=list)

    def record_success(self, result: UpsertResult) -> None:
        self.success += 1
        self.outcomes.append(result)

    def record_failure(self, identity: Any, error: str) -> None:
        self.failed += 1
        self.errors.append(RecordError(identity=identity, error=error))

    @property
    def total(self) -> int:
        return self.success + self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
