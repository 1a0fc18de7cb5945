"""Intercepted requests and the network collaborator that fulfils them."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from ..exceptions import NetworkUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class Request:
    """A resource request seen by the offline worker."""

    url: str
    method: str = "GET"
    mode: str = "cors"  # "navigate" when a full document is requested
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"

    @property
    def is_read(self) -> bool:
        """Only GET requests may be answered from a cache."""
        return self.method.upper() == "GET"


class Fetcher(ABC):
    """Performs network fetches on behalf of the worker."""

    @abstractmethod
    async def fetch(self, request: Request) -> httpx.Response:
        """Fetch a request from the network.

        Returns:
            The network response, whatever its status.

        Raises:
            NetworkUnavailableError: If no response could be obtained.
        """
        pass


class HttpFetcher(Fetcher):
    """Fetcher backed by httpx."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the fetcher.

        Args:
            timeout: Request timeout in seconds; a timeout counts as offline.
            transport: Optional httpx transport (used by tests).
        """
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, request: Request) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=request.body,
                )
            except httpx.TransportError as e:
                logger.debug(f"Network fetch failed for {request.url}: {e}")
                raise NetworkUnavailableError(str(e) or type(e).__name__, url=request.url) from e

        return response
