"""Client contexts the offline worker can message and take control of."""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]

# Recent messages kept per client
RECEIVED_HISTORY = 100


class ClientContext:
    """An active client (page, tab or process) attached to the worker.

    Messages are delivered fire-and-forget: ``post_message`` returns as soon
    as the message is handed to the client's handler.
    """

    def __init__(
        self,
        client_id: str,
        handler: MessageHandler | None = None,
        url: str = "",
        history: int = RECEIVED_HISTORY,
    ):
        self.id = client_id
        self.url = url
        self.controlled = False
        self.received: deque[dict[str, Any]] = deque(maxlen=history)
        self._handler = handler
        self._tasks: set[asyncio.Task] = set()

    def post_message(self, message: dict[str, Any]) -> None:
        """Deliver a message without waiting for the client to process it."""
        self.received.append(message)
        if self._handler is None:
            return

        result = self._handler(message)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Client {self.id} failed to handle message: {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight message handlers to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class ClientRegistry(ABC):
    """Enumerates the client contexts that are currently active."""

    @abstractmethod
    async def match_all(self) -> list[ClientContext]:
        """Return every active client context."""
        pass

    @abstractmethod
    async def claim(self) -> int:
        """Take control of every active client context.

        Returns:
            Number of contexts claimed.
        """
        pass


class InMemoryClientRegistry(ClientRegistry):
    """Registry of client contexts living in the current process."""

    def __init__(self):
        self._clients: dict[str, ClientContext] = {}

    def register(self, context: ClientContext) -> None:
        self._clients[context.id] = context
        logger.debug(f"Client {context.id} registered")

    def unregister(self, client_id: str) -> bool:
        """Remove a client; it will not receive any later message."""
        return self._clients.pop(client_id, None) is not None

    async def match_all(self) -> list[ClientContext]:
        return list(self._clients.values())

    async def claim(self) -> int:
        for context in self._clients.values():
            context.controlled = True
        return len(self._clients)
