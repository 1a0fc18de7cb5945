"""Tests for the offline worker, reconnection trigger and notifier."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from fieldsync.config import Config
from fieldsync.exceptions import InstallError, NetworkUnavailableError
from fieldsync.worker import (
    SYNC_TAG,
    ClientContext,
    Fetcher,
    InMemoryCacheStorage,
    InMemoryClientRegistry,
    OfflineWorker,
    ReconnectionTrigger,
    Request,
    ResourceCachePolicy,
    SyncClientNotifier,
    TriggerStatus,
    WorkerState,
    create_worker,
)
from fieldsync.worker.messages import CLEAR_CACHE, SKIP_WAITING, SYNC_REQUESTED, sync_requested
from fieldsync.worker.trigger import SyncRegistrations

ORIGIN = "http://app.test"

SHELL = {
    f"{ORIGIN}/": (200, "root"),
    f"{ORIGIN}/index.html": (200, "shell"),
    f"{ORIGIN}/manifest.json": (200, "{}"),
}


class FakeFetcher(Fetcher):
    def __init__(self, routes=None, offline=False):
        self.routes = routes or {}
        self.offline = offline
        self.calls = []

    async def fetch(self, request):
        self.calls.append(request)
        if self.offline:
            raise NetworkUnavailableError("offline", url=request.url)
        status, body = self.routes.get(request.url, (404, "not found"))
        return httpx.Response(status, text=body)


class GatedCacheStorage(InMemoryCacheStorage):
    """Cache storage whose deletions wait until the gate opens."""

    def __init__(self, failures=0):
        super().__init__()
        self.gate = asyncio.Event()
        self.failures = failures

    async def delete(self, name):
        await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise OSError("storage unavailable")
        return await super().delete(name)


@pytest.fixture
def clients():
    return InMemoryClientRegistry()


def make_worker(caches, fetcher, clients, generation="v2", skip_waiting=False):
    policy = ResourceCachePolicy(
        caches=caches,
        fetcher=fetcher,
        generation=generation,
        origin=ORIGIN,
        bootstrap_manifest=["./", "./index.html", "./manifest.json"],
    )
    trigger = ReconnectionTrigger(SyncClientNotifier(clients))
    return OfflineWorker(policy, clients, trigger, skip_waiting_on_install=skip_waiting)


class TestLifecycle:
    """Tests for install and activation."""

    @pytest.mark.asyncio
    async def test_generation_rotation(self, clients):
        caches = InMemoryCacheStorage()
        v1 = await caches.open("v1")
        await v1.put(f"{ORIGIN}/app.js", httpx.Response(200, text="old"))
        page = ClientContext("page-1")
        clients.register(page)
        worker = make_worker(caches, FakeFetcher(SHELL), clients)

        await worker.install()

        assert worker.state == WorkerState.INSTALLED
        assert await caches.has("v1")

        deleted = await worker.activate()

        assert deleted == ["v1"]
        assert await caches.keys() == ["v2"]
        assert sorted(await (await caches.open("v2")).keys()) == sorted(SHELL)
        assert worker.state == WorkerState.ACTIVATED
        assert page.controlled

    @pytest.mark.asyncio
    async def test_skip_waiting_on_install_activates(self, clients):
        caches = InMemoryCacheStorage()
        await caches.open("v1")
        worker = make_worker(caches, FakeFetcher(SHELL), clients, skip_waiting=True)

        await worker.install()

        assert worker.state == WorkerState.ACTIVATED
        assert await caches.keys() == ["v2"]

    @pytest.mark.asyncio
    async def test_failed_install_is_redundant(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(offline=True), clients)

        with pytest.raises(InstallError):
            await worker.install()

        assert worker.state == WorkerState.REDUNDANT

    @pytest.mark.asyncio
    async def test_activate_before_install_rejected(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients)

        with pytest.raises(RuntimeError):
            await worker.activate()

    @pytest.mark.asyncio
    async def test_fetch_during_activation_waits_and_skips_old_generation(self, clients):
        caches = GatedCacheStorage()
        v1 = await caches.open("v1")
        await v1.put(f"{ORIGIN}/app.js", httpx.Response(200, text="old"))
        worker = make_worker(caches, FakeFetcher(SHELL), clients)
        await worker.install()

        activation = asyncio.create_task(worker.activate())
        await asyncio.sleep(0)
        assert worker.state == WorkerState.ACTIVATING

        worker.policy.fetcher = FakeFetcher(offline=True)
        fetch = asyncio.create_task(worker.fetch(Request("./app.js")))
        await asyncio.sleep(0)
        assert not fetch.done()

        caches.gate.set()
        await activation
        response = await fetch

        assert response is None
        assert not await caches.has("v1")

    @pytest.mark.asyncio
    async def test_failed_activation_can_be_retried(self, clients):
        caches = GatedCacheStorage(failures=1)
        await caches.open("v1")
        routes = dict(SHELL)
        routes[f"{ORIGIN}/app.js"] = (200, "from network")
        worker = make_worker(caches, FakeFetcher(routes), clients)
        await worker.install()

        activation = asyncio.create_task(worker.activate())
        await asyncio.sleep(0)
        fetch = asyncio.create_task(worker.fetch(Request(f"{ORIGIN}/app.js")))
        await asyncio.sleep(0)
        caches.gate.set()

        with pytest.raises(OSError):
            await activation
        response = await asyncio.wait_for(fetch, timeout=1)

        assert worker.state == WorkerState.INSTALLED
        assert response.text == "from network"
        assert await caches.has("v1")

        deleted = await worker.activate()

        assert deleted == ["v1"]
        assert worker.state == WorkerState.ACTIVATED


class TestFetch:
    """Tests for request routing."""

    @pytest.mark.asyncio
    async def test_writes_go_to_network(self, clients):
        fetcher = FakeFetcher({f"{ORIGIN}/api/observations": (200, "{}")})
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients, skip_waiting=True)
        await worker.install()
        worker.policy.fetcher = fetcher

        response = await worker.fetch(Request(f"{ORIGIN}/api/observations", method="POST"))

        assert response.status_code == 200
        assert fetcher.calls[-1].method == "POST"

    @pytest.mark.asyncio
    async def test_failed_write_is_not_masked(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients, skip_waiting=True)
        await worker.install()
        worker.policy.fetcher = FakeFetcher(offline=True)

        with pytest.raises(NetworkUnavailableError):
            await worker.fetch(Request(f"{ORIGIN}/api/observations", method="POST"))

    @pytest.mark.asyncio
    async def test_not_intercepted_before_activation(self, clients):
        fetcher = FakeFetcher({f"{ORIGIN}/app.js": (200, "js")})
        worker = make_worker(InMemoryCacheStorage(), fetcher, clients)

        response = await worker.fetch(Request(f"{ORIGIN}/app.js"))

        assert response.text == "js"
        assert not await worker.policy.caches.has("v2")

    @pytest.mark.asyncio
    async def test_offline_api_read_after_activation(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients, skip_waiting=True)
        await worker.install()
        worker.policy.fetcher = FakeFetcher(offline=True)

        response = await worker.dispatch("fetch", Request(f"{ORIGIN}/api/observations"))

        assert response.status_code == 503


class TestMessages:
    """Tests for client-to-worker messages."""

    @pytest.mark.asyncio
    async def test_skip_waiting_message(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients)
        await worker.install()

        await worker.message({"type": SKIP_WAITING})

        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_skip_waiting_before_install(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients)

        await worker.message({"type": SKIP_WAITING})
        await worker.install()

        assert worker.state == WorkerState.ACTIVATED

    @pytest.mark.asyncio
    async def test_clear_cache_message(self, clients):
        caches = InMemoryCacheStorage()
        await caches.open("v1")
        worker = make_worker(caches, FakeFetcher(SHELL), clients, skip_waiting=True)
        await worker.install()

        cleared = await worker.dispatch("message", {"type": CLEAR_CACHE})

        assert cleared == 1
        assert await caches.keys() == []

    @pytest.mark.asyncio
    async def test_unknown_message_ignored(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients)

        assert await worker.message({"type": "PING"}) is None
        assert await worker.message("not a dict") is None

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, clients):
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(SHELL), clients)

        with pytest.raises(ValueError):
            await worker.dispatch("push", {})


class TestSyncTrigger:
    """Tests for the reconnection trigger and notifier."""

    @pytest.mark.asyncio
    async def test_matching_tag_notifies_all_clients(self, clients):
        pages = [ClientContext(f"page-{i}") for i in range(3)]
        for page in pages:
            clients.register(page)
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(), clients)

        result = await worker.dispatch("sync", SYNC_TAG)

        assert result.status == TriggerStatus.SUCCEEDED
        assert result.success
        assert result.notified == 3
        for page in pages:
            assert len(page.received) == 1
            assert page.received[0]["type"] == SYNC_REQUESTED
            assert isinstance(page.received[0]["timestamp"], int)

    @pytest.mark.asyncio
    async def test_no_clients_is_success(self, clients):
        trigger = ReconnectionTrigger(SyncClientNotifier(clients))

        result = await trigger.handle(SYNC_TAG)

        assert result.success
        assert result.notified == 0

    @pytest.mark.asyncio
    async def test_other_tag_ignored(self, clients):
        page = ClientContext("page-1")
        clients.register(page)
        trigger = ReconnectionTrigger(SyncClientNotifier(clients))

        result = await trigger.handle("sync-photos")

        assert result.status == TriggerStatus.IGNORED
        assert len(page.received) == 0

    @pytest.mark.asyncio
    async def test_enumeration_failure_reported(self):
        registry = InMemoryClientRegistry()
        registry.match_all = AsyncMock(side_effect=RuntimeError("clients unavailable"))
        trigger = ReconnectionTrigger(SyncClientNotifier(registry))

        result = await trigger.handle(SYNC_TAG)

        assert result.status == TriggerStatus.FAILED
        assert not result.success
        assert "clients unavailable" in result.error

    @pytest.mark.asyncio
    async def test_inactive_client_not_notified(self, clients):
        gone = ClientContext("page-gone")
        clients.register(gone)
        clients.unregister("page-gone")
        notifier = SyncClientNotifier(clients)

        assert await notifier.notify() == 0
        assert len(gone.received) == 0

    @pytest.mark.asyncio
    async def test_async_handler_runs(self, clients):
        seen = []

        async def handler(message):
            seen.append(message["type"])

        page = ClientContext("page-1", handler=handler)
        clients.register(page)

        await SyncClientNotifier(clients).notify()
        await page.drain()

        assert seen == [SYNC_REQUESTED]

    def test_received_history_is_bounded(self):
        page = ClientContext("page-1", history=3)

        for i in range(10):
            page.post_message(sync_requested(timestamp_ms=i))

        assert [m["timestamp"] for m in page.received] == [7, 8, 9]


class TestSyncRegistrations:
    """Tests for tag deduplication and retry on reconnection."""

    def test_register_dedupes(self):
        registrations = SyncRegistrations()

        assert registrations.register(SYNC_TAG)
        assert not registrations.register(SYNC_TAG)
        assert registrations.pending == [SYNC_TAG]

    @pytest.mark.asyncio
    async def test_fire_once_per_tag(self, clients):
        page = ClientContext("page-1")
        clients.register(page)
        worker = make_worker(InMemoryCacheStorage(), FakeFetcher(), clients)
        worker.register_sync()
        worker.register_sync()

        results = await worker.connectivity_restored()

        assert len(results) == 1
        assert len(page.received) == 1
        assert worker.registrations.pending == []

    @pytest.mark.asyncio
    async def test_failed_tag_stays_pending(self):
        registry = InMemoryClientRegistry()
        registry.match_all = AsyncMock(side_effect=RuntimeError("boom"))
        trigger = ReconnectionTrigger(SyncClientNotifier(registry))
        registrations = SyncRegistrations()
        registrations.register(SYNC_TAG)

        results = await registrations.fire(trigger)

        assert results[0].status == TriggerStatus.FAILED
        assert registrations.pending == [SYNC_TAG]


class TestCreateWorker:
    """Tests for building a worker from configuration."""

    def test_from_default_config(self, clients):
        config = Config()

        worker = create_worker(config.cache, config.sync, clients)

        assert worker.policy.generation == "tramway-terrain-v1"
        assert worker.trigger.tag == "sync-observations"
        assert worker.state == WorkerState.PARSED
