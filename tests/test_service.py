"""
Tests for the OfflineCore facade.
"""

import pytest

from offsync import OfflineCore
from offsync.core.types import MutationKind
from offsync.observability.metrics import MetricsCollector
from offsync.resilience.errors import ExhaustedError
from offsync.storage.memory import MemoryStore
from offsync.sync.uploader import HttpUploader


@pytest.fixture
async def core(settings, store, uploader, probe, clock):
    core = OfflineCore(settings, store=store, uploader=uploader, probe=probe, clock=clock)
    yield core
    await core.close()


class Fetcher:
    def __init__(self, value=None, fail=False):
        self.value = value
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("api down")
        return self.value


class TestConstruction:

    def test_from_settings(self, settings):
        core = OfflineCore(settings)
        assert isinstance(core.store, MemoryStore)
        assert isinstance(core.uploader, HttpUploader)
        assert core.uploader.base_url == settings.sync_base_url
        assert core.queue.capacity == settings.queue_capacity
        assert core.cache.max_entries == settings.cache_max_entries
        assert core.probe.targets == tuple(settings.probe_targets)

    def test_default_settings(self, monkeypatch):
        monkeypatch.setenv("OFFSYNC_STORE_BACKEND", "memory")
        monkeypatch.setenv("OFFSYNC_QUEUE_CAPACITY", "12")
        core = OfflineCore()
        assert core.queue.capacity == 12

    @pytest.mark.asyncio
    async def test_context_manager_closes_uploader(self, settings):
        async with OfflineCore(settings) as core:
            await core.uploader.connect()
            assert core.uploader._client is not None
        assert core.uploader._client is None

    @pytest.mark.asyncio
    async def test_injected_empty_collaborators_kept(self, settings, uploader, probe, clock):
        store = MemoryStore()
        metrics = MetricsCollector()
        assert len(store) == 0

        core = OfflineCore(
            settings, store=store, uploader=uploader, probe=probe, clock=clock, metrics=metrics
        )

        assert core.store is store
        assert core.cache._store is store
        assert core.queue._store is store
        assert core.executor.metrics is metrics
        assert core.executor.error_log is core.error_log
        await core.close()

    @pytest.mark.asyncio
    async def test_executor_errors_visible_in_status(self, core):
        await core.fetch("market_data", Fetcher(fail=True))

        status = await core.status()

        assert status["errors"]["total_errors"] == len(core.error_log)
        assert status["errors"]["total_errors"] > 0


class TestFetch:

    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, core):
        fetcher = Fetcher({"milk": 4})

        assert await core.fetch("inventory", fetcher) == {"milk": 4}
        assert await core.fetch("inventory", fetcher) == {"milk": 4}
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_ttl_respected(self, core, clock):
        fetcher = Fetcher("fresh")
        await core.fetch("weather", fetcher, ttl=10)
        clock.advance(11)
        await core.fetch("weather", fetcher, ttl=10)
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_fallback_on_failure(self, core):
        result = await core.fetch(
            "predictions", Fetcher(fail=True), fallback=Fetcher(["default"])
        )
        assert result == ["default"]

    @pytest.mark.asyncio
    async def test_total_failure_returns_none(self, core):
        fetcher = Fetcher(fail=True)
        assert await core.fetch("market_data", fetcher) is None
        assert "market_data" not in core.cache


class TestMutationsAndSync:

    @pytest.mark.asyncio
    async def test_record_and_sync(self, core, uploader):
        record = await core.record_mutation(MutationKind.SALE, {"item": "milk"})
        await core.record_mutation("waste", {"item": "bread"})

        report = await core.sync()

        assert report.synced == 2
        assert record.id in uploader.ids()
        assert (await core.status())["pending"] == 0

    @pytest.mark.asyncio
    async def test_sync_failure_raises_exhausted(self, settings, uploader, probe, clock):
        class BrokenStore(MemoryStore):
            async def get(self, key):
                raise OSError("disk gone")

        core = OfflineCore(settings, store=BrokenStore(), uploader=uploader, probe=probe, clock=clock)
        await core.record_mutation("sale", {})
        with pytest.raises(ExhaustedError):
            await core.sync()
        await core.close()


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_snapshot(self, core, uploader):
        uploader.failures = {}
        await core.record_mutation("inventory", {"milk": 3})
        core.executor.breaker("inventory_api")

        status = await core.status()

        assert status["online"] is True
        assert status["pending"] == 1
        assert status["queue"]["capacity"] == 100
        assert "inventory_api" in status["breakers"]
        assert status["cache"]["hits"] == 0
        assert status["errors"]["total_errors"] == 0
        assert "total_operations" in status["metrics"]
        assert status["recommendations"] == []
        assert status["session_id"] == core.session_id

    @pytest.mark.asyncio
    async def test_is_online_delegates_connectivity_check(self, core, probe):
        assert await core.is_online() is True
        assert probe.calls == 1


class TestScheduling:

    @pytest.mark.asyncio
    async def test_start_and_close(self, core):
        core.start(interval=5.0)
        assert core.scheduler.running
        await core.close()
        assert not core.scheduler.running

    @pytest.mark.asyncio
    async def test_close_idempotent(self, core):
        await core.close()
        await core.close()


class TestErrorHistory:

    @pytest.mark.asyncio
    async def test_errors_persist_across_cores(self, settings, store, uploader, probe, clock):
        async def down():
            raise ConnectionError("api down")

        first = OfflineCore(settings, store=store, uploader=uploader, probe=probe, clock=clock)
        await first.fetch("market_data", down)
        recorded = len(first.error_log)
        await first.close()

        second = OfflineCore(settings, store=store, uploader=uploader, probe=probe, clock=clock)
        status = await second.status()
        await second.close()

        assert recorded > 0
        assert status["errors"]["total_errors"] == recorded
