"""Reconnection trigger and the notifier that asks clients to flush."""

import logging
from dataclasses import dataclass
from enum import Enum

from .clients import ClientRegistry
from .messages import sync_requested

logger = logging.getLogger(__name__)

SYNC_TAG = "sync-observations"


class TriggerStatus(Enum):
    """Outcome of handling a sync signal."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # Host should retry the signal later
    IGNORED = "ignored"  # Tag not recognised


@dataclass
class TriggerResult:
    """Result reported back to the host for one sync signal."""

    tag: str
    status: TriggerStatus
    notified: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == TriggerStatus.SUCCEEDED


class SyncClientNotifier:
    """Tells every active client context that pending writes should be flushed.

    Delivery is best-effort with no acknowledgement; contexts that are not
    active right now never see the message.
    """

    def __init__(self, clients: ClientRegistry):
        self._clients = clients

    async def notify(self) -> int:
        """Send SYNC_REQUESTED to all active clients.

        Returns:
            Number of contexts the message was dispatched to.
        """
        contexts = await self._clients.match_all()
        message = sync_requested()

        notified = 0
        for context in contexts:
            try:
                context.post_message(message)
                notified += 1
            except Exception as e:
                logger.warning(f"Could not notify client {context.id}: {e}")

        logger.debug(f"SYNC_REQUESTED dispatched to {notified}/{len(contexts)} clients")
        return notified


class ReconnectionTrigger:
    """Turns a tagged background-sync signal into one notifier run."""

    def __init__(self, notifier: SyncClientNotifier, tag: str = SYNC_TAG):
        self._notifier = notifier
        self.tag = tag

    async def handle(self, tag: str) -> TriggerResult:
        """Handle a sync signal from the host.

        Failures are reported in the result, never raised, so the host can
        decide to retry.
        """
        logger.info(f"Background sync signal: {tag}")

        if tag != self.tag:
            return TriggerResult(tag=tag, status=TriggerStatus.IGNORED)

        try:
            notified = await self._notifier.notify()
        except Exception as e:
            logger.error(f"Sync attempt failed: {e}")
            return TriggerResult(tag=tag, status=TriggerStatus.FAILED, error=str(e))

        return TriggerResult(tag=tag, status=TriggerStatus.SUCCEEDED, notified=notified)


class SyncRegistrations:
    """Pending background-sync registrations, deduplicated by tag.

    Registering a tag that is already pending is a no-op. When connectivity
    returns each pending tag fires once; tags whose attempt failed stay
    registered for the next reconnection.
    """

    def __init__(self):
        self._pending: list[str] = []

    def register(self, tag: str) -> bool:
        """Register a tag.

        Returns:
            True if the tag was not already pending.
        """
        if tag in self._pending:
            return False
        self._pending.append(tag)
        return True

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    async def fire(self, trigger: ReconnectionTrigger) -> list[TriggerResult]:
        """Deliver every pending tag to the trigger once."""
        results = []
        for tag in list(self._pending):
            result = await trigger.handle(tag)
            if result.status != TriggerStatus.FAILED:
                self._pending.remove(tag)
            results.append(result)
        return results
