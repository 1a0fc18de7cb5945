"""Observation synchronization.

Server side: batch reconciliation into the record store.
Client side: an outbox of pending observations and the client that pushes it.
"""

from .outbox import ObservationOutbox, OutboxEntry
from .reconcile import ReconciliationService, ServerClock
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = [
    "ObservationOutbox",
    "OutboxEntry",
    "ReconciliationService",
    "ServerClock",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
]
