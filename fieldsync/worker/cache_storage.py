"""Named cache generations holding stored responses."""

import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)

# Describe the wire encoding, not the decoded body we keep
_WIRE_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


def copy_response(response: httpx.Response) -> httpx.Response:
    """Detached copy of a fully-read response."""
    headers = [
        (k, v) for k, v in response.headers.multi_items() if k.lower() not in _WIRE_HEADERS
    ]
    return httpx.Response(
        status_code=response.status_code,
        headers=headers,
        content=response.content,
    )


class Cache(ABC):
    """One cache generation: request URL -> stored response."""

    @abstractmethod
    async def match(self, url: str) -> httpx.Response | None:
        """Return a copy of the stored response for a URL, if any."""
        pass

    @abstractmethod
    async def put(self, url: str, response: httpx.Response) -> None:
        """Store a copy of a response under a URL."""
        pass

    @abstractmethod
    async def delete(self, url: str) -> bool:
        pass

    @abstractmethod
    async def keys(self) -> list[str]:
        pass


class CacheStorage(ABC):
    """The set of cache generations known to the worker."""

    @abstractmethod
    async def open(self, name: str) -> Cache:
        """Open a generation, creating it if needed."""
        pass

    @abstractmethod
    async def has(self, name: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete a generation and everything in it.

        Returns:
            True if the generation existed.
        """
        pass

    @abstractmethod
    async def keys(self) -> list[str]:
        """Names of all existing generations, in creation order."""
        pass

    async def match(self, url: str, generation: str) -> httpx.Response | None:
        """Look up a URL in one generation without creating it."""
        if not await self.has(generation):
            return None
        cache = await self.open(generation)
        return await cache.match(url)


class InMemoryCache(Cache):
    def __init__(self):
        self._entries: dict[str, httpx.Response] = {}

    async def match(self, url: str) -> httpx.Response | None:
        stored = self._entries.get(url)
        return copy_response(stored) if stored is not None else None

    async def put(self, url: str, response: httpx.Response) -> None:
        self._entries[url] = copy_response(response)

    async def delete(self, url: str) -> bool:
        return self._entries.pop(url, None) is not None

    async def keys(self) -> list[str]:
        return list(self._entries)


class InMemoryCacheStorage(CacheStorage):
    """Cache generations kept in process memory."""

    def __init__(self):
        self._caches: dict[str, InMemoryCache] = {}

    async def open(self, name: str) -> Cache:
        if name not in self._caches:
            self._caches[name] = InMemoryCache()
            logger.debug(f"Cache generation created: {name}")
        return self._caches[name]

    async def has(self, name: str) -> bool:
        return name in self._caches

    async def delete(self, name: str) -> bool:
        return self._caches.pop(name, None) is not None

    async def keys(self) -> list[str]:
        return list(self._caches)
