"""Server-side reconciliation of client observations into the record store."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any

from ..exceptions import ClientInputError, StoreError
from ..models import (
    IDENTITY_FIELD,
    BatchResult,
    Observation,
    UpsertOperation,
    UpsertResult,
    is_valid_identity,
)
from ..store import RecordStore

logger = logging.getLogger(__name__)


class ServerClock:
    """Wall clock for sync stamps with a strictly increasing millisecond counter."""

    def __init__(self):
        self._last_ms = 0
        self._lock = threading.Lock()

    def now(self) -> tuple[datetime, int]:
        """Return (synced_at, server_timestamp) for a write."""
        with self._lock:
            now_ms = time.time_ns() // 1_000_000
            self._last_ms = max(now_ms, self._last_ms + 1)
            return datetime.now(timezone.utc), self._last_ms


class ReconciliationService:
    """Merges client-produced observations into the canonical store.

    Records are applied one at a time in input order. The service holds no
    cross-request lock; per-identity atomicity is the store's job.
    """

    def __init__(self, store: RecordStore, clock: ServerClock | None = None):
        self._store = store
        self._clock = clock or ServerClock()

    def _apply(self, observation: Observation) -> UpsertResult:
        synced_at, server_ts = self._clock.now()
        result = self._store.upsert_by_identity(observation.stamped(synced_at, server_ts))

        if result.operation == UpsertOperation.CREATED:
            logger.info(f"New observation created: {result.identity}")
        elif result.operation == UpsertOperation.UPDATED:
            logger.info(f"Observation updated: {result.identity}")
        else:
            logger.info(f"Observation already up to date: {result.identity}")

        return result

    def upsert_one(self, data: Any) -> UpsertResult:
        """Reconcile a single observation document.

        Raises:
            ClientInputError: If the body is not an object or its identity is
                absent or malformed.
            StoreError: If the store rejects the write.
        """
        if not isinstance(data, dict) or not is_valid_identity(data.get(IDENTITY_FIELD)):
            raise ClientInputError("Invalid observation: missing ID")

        logger.info(f"Received observation ID: {data[IDENTITY_FIELD]}")
        return self._apply(Observation.from_dict(data))

    def reconcile(self, records: Any) -> BatchResult:
        """Reconcile a batch of observation documents.

        A record the store rejects is reported in the result's error list and
        processing moves on to the next record.

        Raises:
            ClientInputError: If ``records`` is not a non-empty list.
        """
        if not isinstance(records, (list, tuple)) or len(records) == 0:
            raise ClientInputError("Invalid observation list")

        logger.info(f"Received {len(records)} observations")

        result = BatchResult()
        for data in records:
            identity = data.get(IDENTITY_FIELD) if isinstance(data, dict) else None
            try:
                if not isinstance(data, dict):
                    raise StoreError(f"Observation must be an object, got {type(data).__name__}")
                outcome = self._apply(Observation.from_dict(data))
            except StoreError as e:
                logger.warning(f"Observation {identity!r} rejected: {e}")
                result.record_failure(identity, str(e))
                continue

            result.record_success(outcome)

        logger.info(
            f"Batch sync finished: {result.success} succeeded, {result.failed} failed"
        )
        return result
