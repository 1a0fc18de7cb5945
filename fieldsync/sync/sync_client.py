"""Client that pushes outbox observations to the reconciliation server.

Handles network synchronization with retry logic and batching.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..models import identity_key
from ..worker.clients import ClientContext
from ..worker.messages import SYNC_REQUESTED, message_type
from .outbox import ObservationOutbox

logger = logging.getLogger(__name__)

BATCH_PATH = "/api/observations/batch"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Server rejected some records
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Pushes pending observations to the server's batch endpoint.

    Entries are only marked synced once the server has accepted them; entries
    named in the batch error list stay pending for the next attempt.
    """

    def __init__(
        self,
        outbox: ObservationOutbox,
        remote_url: str | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            outbox: Local outbox to flush.
            remote_url: Base URL of the server (e.g., "http://localhost:3000").
            batch_size: Maximum observations per batch request.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            backoff_seconds: Initial delay between retries, doubled each time.
            transport: Optional httpx transport (used by tests).
        """
        self.outbox = outbox
        self.remote_url = remote_url
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0
        self._flush_lock = asyncio.Lock()

    def set_remote_url(self, url: str) -> None:
        """Set or update the remote URL."""
        self.remote_url = url
        logger.info(f"Remote URL set to {url}")

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
    ) -> tuple[Any, str | None, bool]:
        """Make HTTP request with exponential backoff retry.

        Returns:
            Tuple of (response_data, error_message, offline).
        """
        if not self.remote_url:
            return None, "No remote URL configured", False

        url = f"{self.remote_url.rstrip('/')}{path}"
        backoff = self.backoff_seconds
        offline = False

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(method, url, json=json_data)

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None, False

                    elif response.status_code >= 500:
                        offline = False
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}", False

                except httpx.TransportError as e:
                    offline = True
                    logger.warning(
                        f"Connection failed ({type(e).__name__}), "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        if offline:
            return None, f"Connection failed after {self.max_retries} attempts", True
        return None, f"Max retries ({self.max_retries}) exceeded", False

    async def push_pending(self) -> SyncResult:
        """Push one batch of pending observations.

        Returns:
            SyncResult with push statistics.
        """
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        entries = self.outbox.get_pending(limit=self.batch_size)
        if not entries:
            return SyncResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

        payload = {"observations": [e.document for e in entries]}

        data, error, offline = await self._request_with_retry("POST", BATCH_PATH, payload)

        if error:
            return SyncResult(
                status=SyncStatus.OFFLINE if offline else SyncStatus.FAILED,
                error=error,
            )

        results = data.get("results", {})
        errors = results.get("errors", [])
        rejected = {identity_key(e["id"]) for e in errors if e.get("id") is not None}

        accepted = [e for e in entries if e.key not in rejected]
        self.outbox.mark_synced(accepted)
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.PARTIAL if errors else SyncStatus.SUCCESS,
            entries_pushed=len(accepted),
            entries_failed=len(entries) - len(accepted),
            errors=errors,
            timestamp=self._last_sync,
        )

    async def flush(self) -> SyncResult:
        """Push batches until the outbox is empty or a push does not fully succeed.

        Returns:
            Combined SyncResult.
        """
        async with self._flush_lock:
            total = SyncResult(status=SyncStatus.SUCCESS, timestamp=datetime.now())

            while True:
                result = await self.push_pending()
                total.entries_pushed += result.entries_pushed
                total.entries_failed += result.entries_failed
                total.errors.extend(result.errors)
                total.status = result.status
                total.error = result.error
                total.timestamp = result.timestamp or total.timestamp

                if result.status != SyncStatus.SUCCESS or result.entries_pushed == 0:
                    break

            logger.info(
                f"Flush: {total.status.value}, pushed={total.entries_pushed}, "
                f"failed={total.entries_failed}"
            )
            return total

    async def handle_message(self, message: dict[str, Any]) -> SyncResult | None:
        """React to worker messages; SYNC_REQUESTED triggers a flush."""
        if message_type(message) != SYNC_REQUESTED:
            return None

        logger.info(f"Sync requested at {message.get('timestamp')}")
        return await self.flush()

    def as_client_context(self, client_id: str = "sync-client") -> ClientContext:
        """Expose this client as a context the worker can notify."""
        return ClientContext(client_id, handler=self.handle_message)

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Re-check the outbox periodically, independent of worker signals.

        Args:
            interval_seconds: Seconds between flush attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Back off while the server keeps failing
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful push."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        outbox_stats = self.outbox.get_stats()

        return {
            "remote_url": self.remote_url,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_entries": outbox_stats["pending_entries"],
            "total_entries": outbox_stats["total_entries"],
        }
