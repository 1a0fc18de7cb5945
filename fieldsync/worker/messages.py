"""In-process message protocol between the offline worker and client contexts."""

import time
from typing import Any

SKIP_WAITING = "SKIP_WAITING"  # client -> worker: activate the waiting generation now
CLEAR_CACHE = "CLEAR_CACHE"  # client -> worker: drop every cache generation
SYNC_REQUESTED = "SYNC_REQUESTED"  # worker -> client: flush pending writes


def message_type(data: Any) -> str | None:
    """Extract the ``type`` of a message, or None if it has none."""
    if isinstance(data, dict):
        return data.get("type")
    return None


def sync_requested(timestamp_ms: int | None = None) -> dict[str, Any]:
    """Build a SYNC_REQUESTED message."""
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    return {"type": SYNC_REQUESTED, "timestamp": timestamp_ms}
