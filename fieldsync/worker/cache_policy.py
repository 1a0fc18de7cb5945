"""Decides whether intercepted requests are served from cache or the network.

Two strategies, picked by the request's target:

- API requests go network-first with no caching. When the network is
  unreachable the caller gets a synthesized 503 "offline" document, which
  is never stored.
- Everything else goes cache-first. Misses are fetched and valid responses
  are written back into the active generation. When the network fails a
  navigation falls back to the cached offline document; other requests get
  no response.

The policy also owns the cache generation lifecycle: install populates the
active generation from the bootstrap manifest, activation deletes every
other generation.
"""

import asyncio
import logging
from enum import Enum
from urllib.parse import urljoin

import httpx

from ..exceptions import InstallError, NetworkUnavailableError
from .cache_storage import CacheStorage
from .fetcher import Fetcher, Request

logger = logging.getLogger(__name__)

OFFLINE_STATUS = 503
OFFLINE_MESSAGE = "Offline mode - data will be synchronized later"


class ResourceClass(Enum):
    """Which strategy applies to a request."""

    DYNAMIC = "dynamic"  # Reconciliation/data API
    STATIC = "static"  # App shell and assets


def offline_response() -> httpx.Response:
    """Synthesized response for an unreachable API."""
    return httpx.Response(
        OFFLINE_STATUS,
        json={"error": "offline", "message": OFFLINE_MESSAGE},
    )


class ResourceCachePolicy:
    """Cache policy engine for one active cache generation."""

    def __init__(
        self,
        caches: CacheStorage,
        fetcher: Fetcher,
        generation: str,
        origin: str,
        bootstrap_manifest: list[str] | None = None,
        offline_document: str = "./index.html",
        api_markers: list[str] | None = None,
    ):
        """Initialize the policy.

        Args:
            caches: Cache generation storage.
            fetcher: Network collaborator.
            generation: Name of the active cache generation.
            origin: Origin of the app (scheme://host[:port]); only same-origin
                responses are cached.
            bootstrap_manifest: URLs cached at install time.
            offline_document: URL served to navigations when offline.
            api_markers: URL fragments identifying API requests.
        """
        self.caches = caches
        self.fetcher = fetcher
        self.generation = generation
        self.origin = origin.rstrip("/")
        self.bootstrap_manifest = list(bootstrap_manifest or [])
        self.offline_document = offline_document
        self.api_markers = list(api_markers if api_markers is not None else ["/api/"])

    def resolve(self, url: str) -> str:
        """Absolute URL for a possibly app-relative one."""
        return urljoin(f"{self.origin}/", url)

    def classify(self, request: Request) -> ResourceClass:
        url = self.resolve(request.url)
        if any(marker in url for marker in self.api_markers):
            return ResourceClass.DYNAMIC
        return ResourceClass.STATIC

    def intercepts(self, request: Request) -> bool:
        """Writes are never intercepted; they always go to the network."""
        return request.is_read

    def is_cacheable(self, request: Request, response: httpx.Response) -> bool:
        """Only successful same-origin responses are written back."""
        if response.status_code != 200:
            return False
        target = httpx.URL(self.resolve(request.url))
        origin = httpx.URL(self.origin)
        return (target.scheme, target.host, target.port) == (
            origin.scheme,
            origin.host,
            origin.port,
        )

    async def respond(self, request: Request) -> httpx.Response | None:
        """Answer an intercepted GET request.

        Returns:
            A response, or None when a static resource is unavailable both
            from cache and network.
        """
        request = Request(
            url=self.resolve(request.url),
            method=request.method,
            mode=request.mode,
            headers=request.headers,
            body=request.body,
        )
        if self.classify(request) == ResourceClass.DYNAMIC:
            return await self._network_first(request)
        return await self._cache_first(request)

    async def _network_first(self, request: Request) -> httpx.Response:
        try:
            return await self.fetcher.fetch(request)
        except NetworkUnavailableError:
            logger.info(f"API unreachable, answering offline: {request.url}")
            return offline_response()

    async def _cache_first(self, request: Request) -> httpx.Response | None:
        cached = await self.caches.match(request.url, self.generation)
        if cached is not None:
            return cached

        try:
            response = await self.fetcher.fetch(request)
        except NetworkUnavailableError:
            if request.is_navigation:
                logger.info(f"Offline navigation to {request.url}, serving offline document")
                return await self.caches.match(
                    self.resolve(self.offline_document), self.generation
                )
            return None

        if self.is_cacheable(request, response):
            cache = await self.caches.open(self.generation)
            await cache.put(request.url, response)

        return response

    async def install(self) -> int:
        """Create the active generation and cache the bootstrap manifest.

        All manifest entries are fetched before anything is stored, so a failed
        install leaves no generation behind.

        Returns:
            Number of resources cached.

        Raises:
            InstallError: If any manifest entry could not be fetched.
        """
        logger.info(f"Installing cache generation {self.generation}")

        requests = [Request(url=self.resolve(url)) for url in self.bootstrap_manifest]
        results = await asyncio.gather(
            *(self.fetcher.fetch(r) for r in requests), return_exceptions=True
        )

        for request, result in zip(requests, results):
            if isinstance(result, BaseException):
                raise InstallError(f"Could not fetch {request.url}: {result}") from result
            if result.status_code != 200:
                raise InstallError(f"Could not fetch {request.url}: HTTP {result.status_code}")

        cache = await self.caches.open(self.generation)
        for request, response in zip(requests, results):
            await cache.put(request.url, response)

        logger.info(f"Cached {len(requests)} bootstrap resources")
        return len(requests)

    async def prune_generations(self) -> list[str]:
        """Delete every generation other than the active one.

        Returns once all deletions have completed.

        Returns:
            Names of deleted generations.
        """
        stale = [name for name in await self.caches.keys() if name != self.generation]
        for name in stale:
            logger.info(f"Deleting old cache generation: {name}")
        await asyncio.gather(*(self.caches.delete(name) for name in stale))
        return stale

    async def clear_all(self) -> int:
        """Delete every generation, the active one included.

        Returns:
            Number of generations deleted.
        """
        names = await self.caches.keys()
        results = await asyncio.gather(*(self.caches.delete(name) for name in names))
        logger.info(f"Cleared {len(names)} cache generations")
        return sum(1 for deleted in results if deleted)
