"""Offline worker for field clients.

Serves app resources from a generational cache, degrades API calls to an
offline answer when the network is gone, and asks clients to flush their
pending writes when connectivity returns.
"""

from .cache_policy import ResourceCachePolicy, ResourceClass, offline_response
from .cache_storage import Cache, CacheStorage, InMemoryCacheStorage
from .clients import ClientContext, ClientRegistry, InMemoryClientRegistry
from .fetcher import Fetcher, HttpFetcher, Request
from .offline_worker import OfflineWorker, WorkerState, create_worker
from .trigger import (
    SYNC_TAG,
    ReconnectionTrigger,
    SyncClientNotifier,
    TriggerResult,
    TriggerStatus,
)

__all__ = [
    "Cache",
    "CacheStorage",
    "ClientContext",
    "ClientRegistry",
    "Fetcher",
    "HttpFetcher",
    "InMemoryCacheStorage",
    "InMemoryClientRegistry",
    "OfflineWorker",
    "ReconnectionTrigger",
    "Request",
    "ResourceCachePolicy",
    "ResourceClass",
    "SYNC_TAG",
    "SyncClientNotifier",
    "TriggerResult",
    "TriggerStatus",
    "WorkerState",
    "create_worker",
    "offline_response",
]
