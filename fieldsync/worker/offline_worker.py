"""Offline worker: dispatches lifecycle, fetch, message and sync events."""

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import InstallError
from .cache_policy import ResourceCachePolicy
from .cache_storage import CacheStorage, InMemoryCacheStorage
from .clients import ClientRegistry
from .fetcher import Fetcher, HttpFetcher, Request
from .messages import CLEAR_CACHE, SKIP_WAITING, message_type
from .trigger import (
    ReconnectionTrigger,
    SyncClientNotifier,
    SyncRegistrations,
    TriggerResult,
)

if TYPE_CHECKING:
    from ..config import CacheConfig, SyncConfig

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """Lifecycle state of the worker."""

    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"  # Waiting to activate
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"  # Install failed


class OfflineWorker:
    """Routes events to their handlers through an explicit dispatch table.

    Fetches are only intercepted once the worker is active. Fetches arriving
    while old generations are being deleted wait for activation to finish.
    """

    def __init__(
        self,
        policy: ResourceCachePolicy,
        clients: ClientRegistry,
        trigger: ReconnectionTrigger,
        skip_waiting_on_install: bool = True,
    ):
        self.policy = policy
        self.clients = clients
        self.trigger = trigger
        self.registrations = SyncRegistrations()
        self.state = WorkerState.PARSED
        self._skip_waiting_on_install = skip_waiting_on_install
        self._activated = asyncio.Event()
        self._handlers = {
            "install": self.install,
            "activate": self.activate,
            "fetch": self.fetch,
            "message": self.message,
            "sync": self.sync,
        }

    async def dispatch(self, event: str, *args: Any) -> Any:
        """Run the handler registered for an event category.

        Raises:
            ValueError: If no handler exists for the event.
        """
        handler = self._handlers.get(event)
        if handler is None:
            raise ValueError(f"Unknown worker event: {event}")
        return await handler(*args)

    async def install(self) -> int:
        """Populate the active generation with the bootstrap manifest.

        Raises:
            InstallError: If the manifest could not be cached; the worker
                becomes redundant.
        """
        logger.info("Installing offline worker...")
        self.state = WorkerState.INSTALLING

        try:
            cached = await self.policy.install()
        except InstallError:
            self.state = WorkerState.REDUNDANT
            raise

        self.state = WorkerState.INSTALLED
        if self._skip_waiting_on_install:
            await self.skip_waiting()
        return cached

    async def skip_waiting(self) -> None:
        """Activate now instead of waiting for old clients to go away."""
        if self.state == WorkerState.INSTALLED:
            await self.activate()
        else:
            self._skip_waiting_on_install = True

    async def activate(self) -> list[str]:
        """Delete stale generations, then claim every active client.

        If either step fails the worker goes back to ``installed`` so
        activation can be retried, and fetches waiting on it go to the
        network.

        Returns:
            Names of deleted generations.
        """
        if self.state == WorkerState.ACTIVATED:
            return []
        if self.state != WorkerState.INSTALLED:
            raise RuntimeError(f"Cannot activate worker in state {self.state.value}")

        logger.info("Activating offline worker...")
        self.state = WorkerState.ACTIVATING

        try:
            deleted = await self.policy.prune_generations()
            claimed = await self.clients.claim()
        except Exception as e:
            logger.error(f"Activation failed, worker stays installed: {e}")
            self.state = WorkerState.INSTALLED
            # Release waiting fetches to the network, then re-arm for a retry
            self._activated.set()
            self._activated = asyncio.Event()
            raise

        self.state = WorkerState.ACTIVATED
        self._activated.set()
        logger.info(
            f"Generation {self.policy.generation} active, "
            f"{len(deleted)} old generations removed, {claimed} clients claimed"
        )
        return deleted

    async def fetch(self, request: Request) -> httpx.Response | None:
        """Handle a resource request.

        Non-GET requests and requests made before activation go straight to
        the network, and network errors reach the caller.
        """
        if not self.policy.intercepts(request):
            return await self.policy.fetcher.fetch(request)

        if self.state == WorkerState.ACTIVATING:
            await self._activated.wait()

        if self.state != WorkerState.ACTIVATED:
            return await self.policy.fetcher.fetch(request)

        return await self.policy.respond(request)

    async def message(self, data: Any) -> Any:
        """Handle a message posted by a client."""
        kind = message_type(data)

        if kind == SKIP_WAITING:
            await self.skip_waiting()
            return None

        if kind == CLEAR_CACHE:
            return await self.policy.clear_all()

        logger.debug(f"Ignoring message: {kind}")
        return None

    async def sync(self, tag: str) -> TriggerResult:
        """Handle a background-sync signal."""
        return await self.trigger.handle(tag)

    def register_sync(self, tag: str | None = None) -> bool:
        """Ask for a sync attempt on the next reconnection."""
        return self.registrations.register(tag or self.trigger.tag)

    async def connectivity_restored(self) -> list[TriggerResult]:
        """Fire every pending sync registration once."""
        return await self.registrations.fire(self.trigger)


def create_worker(
    cache_config: "CacheConfig",
    sync_config: "SyncConfig",
    clients: ClientRegistry,
    caches: CacheStorage | None = None,
    fetcher: Fetcher | None = None,
) -> OfflineWorker:
    """Build an offline worker from configuration.

    Args:
        cache_config: Cache generation and asset settings.
        sync_config: Sync tag and network timeout.
        clients: Registry of active client contexts.
        caches: Cache storage (in-memory if omitted).
        fetcher: Network collaborator (httpx if omitted).

    Returns:
        Configured OfflineWorker, not yet installed.
    """
    policy = ResourceCachePolicy(
        caches=caches or InMemoryCacheStorage(),
        fetcher=fetcher or HttpFetcher(timeout=sync_config.timeout_seconds),
        generation=cache_config.generation,
        origin=cache_config.origin,
        bootstrap_manifest=cache_config.bootstrap_manifest,
        offline_document=cache_config.offline_document,
        api_markers=cache_config.api_markers,
    )
    trigger = ReconnectionTrigger(SyncClientNotifier(clients), tag=sync_config.tag)
    return OfflineWorker(
        policy, clients, trigger, skip_waiting_on_install=cache_config.skip_waiting
    )
