"""
Unit tests for the reference data cache.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_reference_cache.app.cache.reference_cache import CacheState, ReferenceDataCache
from shared.metrics import MetricsCollector
from shared.test_helpers import InMemoryReferenceSource, ReferenceDataFactory, create_seeded_source


def assert_consistent(collection):
    """Every listed item is indexed and every indexed item is listed."""
    snapshot = collection.snapshot
    assert {item.id for item in snapshot.items} == set(snapshot.index)
    for item in snapshot.items:
        assert snapshot.index[item.id] == item


class TestReferenceDataCache:
    """Test cases for ReferenceDataCache."""

    @pytest.fixture
    def source(self):
        """Seeded in-memory source."""
        return create_seeded_source()

    @pytest_asyncio.fixture
    async def cache(self, source):
        """Cache with a long refresh interval so only forced refreshes run."""
        cache = ReferenceDataCache(source, refresh_interval=60, fetch_timeout=1)
        yield cache
        await cache.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_loads_both_collections(self, cache):
        """Initial load exposes categories ordered by name and id lookups."""
        await cache.initialize()

        categories = cache.get_categories()
        assert [c.name for c in categories] == ["Life", "Tech"]
        assert cache.get_category_by_id("1").name == "Tech"
        assert cache.get_category_by_id("9") is None
        assert [t.name for t in cache.get_tags()] == ["habits", "productivity", "python"]
        assert cache.get_tag_by_id("t1").name == "python"
        assert cache.state == CacheState.READY
        assert cache.is_initialized is True

    @pytest.mark.asyncio
    async def test_reads_before_initialize_are_empty(self, cache, source):
        """Reading before initialization returns empty results without fetching."""
        assert cache.get_categories() == []
        assert cache.get_tags() == []
        assert cache.get_category_by_id("1") is None
        assert cache.get_categories_by_ids(["1", "2"]) == []
        assert source.calls == {}

    @pytest.mark.asyncio
    async def test_batch_lookup_drops_unknown_ids(self, cache):
        """Unknown ids are dropped without gaps; request order is kept."""
        await cache.initialize()

        result = cache.get_categories_by_ids(["2", "404", "1"])
        assert [c.id for c in result] == ["2", "1"]

        only_present = cache.get_categories_by_ids(["1", "9"])
        assert len(only_present) == 1
        assert only_present[0].name == "Tech"

        assert [t.id for t in cache.get_tags_by_ids(["missing", "t3"])] == ["t3"]
        assert cache.get_tags_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_strict_lookup_reports_missing_ids(self, cache):
        """resolve_*_ids lists the ids that could not be resolved."""
        await cache.initialize()

        result = cache.resolve_category_ids(["1", "9", "2", "10"])
        assert [c.id for c in result.found] == ["1", "2"]
        assert result.missing == ["9", "10"]

        tags = cache.resolve_tag_ids(["t2", "nope"])
        assert [t.id for t in tags.found] == ["t2"]
        assert tags.missing == ["nope"]

    @pytest.mark.asyncio
    async def test_get_categories_returns_a_copy(self, cache):
        """Mutating the returned list does not touch the cache."""
        await cache.initialize()

        categories = cache.get_categories()
        categories.clear()

        assert len(cache.get_categories()) == 2

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, cache, source):
        """A second initialize neither refetches nor restarts the timer."""
        await cache.initialize()
        task = cache.refresh_task

        await cache.initialize()

        assert source.calls == {"categories": 1, "tags": 1}
        assert cache.refresh_task is task

    @pytest.mark.asyncio
    async def test_concurrent_initialize_loads_once(self, cache, source):
        """Concurrent first calls share a single initial load."""
        source.slow_down("categories", 0.05)

        await asyncio.gather(cache.initialize(), cache.initialize(), cache.initialize())

        assert source.calls == {"categories": 1, "tags": 1}
        assert cache.is_initialized is True

    @pytest.mark.asyncio
    async def test_initial_load_failure_still_initializes(self, cache, source):
        """A failing store leaves an empty but initialized cache."""
        source.fail("categories")
        source.fail("tags")

        await cache.initialize()

        status = cache.get_status()
        assert status.is_initialized is True
        assert status.categories_count == 0
        assert status.tags_count == 0
        assert status.last_refreshed.categories is None
        assert status.last_refreshed.tags is None
        assert cache.refresh_task is not None

    @pytest.mark.asyncio
    async def test_one_collection_failing_does_not_block_the_other(self, cache, source):
        """Categories and tags refresh independently."""
        source.fail("categories")

        await cache.initialize()

        assert cache.get_categories() == []
        assert len(cache.get_tags()) == 3
        status = cache.get_status()
        assert status.last_refreshed.categories is None
        assert status.last_refreshed.tags is not None

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_data(self, cache, source):
        """Stale-but-available: a failed refresh serves the previous snapshot."""
        await cache.initialize()
        before = cache.get_categories()
        refreshed_at = cache.get_status().last_refreshed.categories
        task = cache.refresh_task

        source.add_row("categories", ReferenceDataFactory.create_category("3", "Travel"))
        source.fail("categories")
        outcome = await cache.refresh()

        assert outcome == {"categories": False, "tags": True}
        assert cache.get_categories() == before
        assert cache.get_status().last_refreshed.categories == refreshed_at
        assert cache.refresh_task is task

    @pytest.mark.asyncio
    async def test_new_rows_appear_only_after_refresh(self, cache, source):
        """Store changes stay invisible until the next refresh."""
        await cache.initialize()

        source.add_row("categories", ReferenceDataFactory.create_category("3", "Travel"))
        assert len(cache.get_categories()) == 2

        outcome = await cache.refresh()

        assert outcome == {"categories": True, "tags": True}
        assert [c.name for c in cache.get_categories()] == ["Life", "Tech", "Travel"]
        assert cache.get_category_by_id("3").name == "Travel"

    @pytest.mark.asyncio
    async def test_removed_rows_disappear_after_refresh(self, cache, source):
        """A refresh replaces the whole snapshot, including removals."""
        await cache.initialize()

        source.set_rows("categories", [ReferenceDataFactory.create_category("2", "Life")])
        await cache.refresh()

        assert cache.get_category_by_id("1") is None
        assert [c.id for c in cache.get_categories()] == ["2"]
        assert_consistent(cache.categories)

    @pytest.mark.asyncio
    async def test_fetch_timeout_counts_as_failure(self, source):
        """A slow table is abandoned after fetch_timeout and keeps its data."""
        cache = ReferenceDataCache(source, refresh_interval=60, fetch_timeout=0.05)
        try:
            await cache.initialize()
            source.slow_down("categories", 1.0)

            outcome = await cache.refresh()

            assert outcome == {"categories": False, "tags": True}
            assert len(cache.get_categories()) == 2
        finally:
            await cache.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_rows_are_skipped(self, cache, source):
        """Rows that fail validation are dropped; the rest is published."""
        source.add_row("categories", {"id": "bad", "created_at": "2024-01-01T00:00:00Z"})

        await cache.initialize()

        assert [c.id for c in cache.get_categories()] == ["2", "1"]
        assert cache.get_category_by_id("bad") is None

    @pytest.mark.asyncio
    async def test_periodic_refresh_picks_up_changes(self, source):
        """The background task refreshes on its own."""
        cache = ReferenceDataCache(source, refresh_interval=0.05)
        try:
            await cache.initialize()
            source.add_row("tags", ReferenceDataFactory.create_tag("t4", "travel"))

            for _ in range(40):
                if len(cache.get_tags()) == 4:
                    break
                await asyncio.sleep(0.05)

            assert cache.get_tag_by_id("t4") is not None
            assert source.calls["tags"] >= 2
        finally:
            await cache.shutdown()

    @pytest.mark.asyncio
    async def test_periodic_refresh_survives_failures(self, source):
        """A failing tick does not stop later ticks."""
        cache = ReferenceDataCache(source, refresh_interval=0.02)
        try:
            await cache.initialize()
            source.fail("categories")
            await asyncio.sleep(0.1)
            assert len(cache.get_categories()) == 2

            source.recover("categories")
            source.add_row("categories", ReferenceDataFactory.create_category("3", "Travel"))
            for _ in range(40):
                if len(cache.get_categories()) == 3:
                    break
                await asyncio.sleep(0.02)

            assert len(cache.get_categories()) == 3
            assert not cache.refresh_task.done()
        finally:
            await cache.shutdown()

    @pytest.mark.asyncio
    async def test_snapshot_and_index_stay_consistent(self, cache, source):
        """Items and index always describe the same refresh cycle."""
        await cache.initialize()
        assert_consistent(cache.categories)
        assert_consistent(cache.tags)

        for round_number in range(5):
            source.set_rows("categories", [
                ReferenceDataFactory.create_category(str(i), f"Category {i}")
                for i in range(round_number, round_number + 3)
            ])
            refresh = asyncio.create_task(cache.refresh())
            while not refresh.done():
                assert_consistent(cache.categories)
                await asyncio.sleep(0)
            await refresh
            assert_consistent(cache.categories)

    @pytest.mark.asyncio
    async def test_state_reports_refreshing(self, cache, source):
        """State is REFRESHING while a refresh is in flight."""
        await cache.initialize()
        source.slow_down("tags", 0.1)

        refresh = asyncio.create_task(cache.refresh())
        await asyncio.sleep(0.02)
        assert cache.state == CacheState.REFRESHING
        assert cache.get_status().state == "refreshing"

        await refresh
        assert cache.state == CacheState.READY

    @pytest.mark.asyncio
    async def test_destroy_resets_everything(self, cache):
        """destroy() stops the timer and empties the cache."""
        await cache.initialize()
        task = cache.refresh_task

        cache.destroy()
        await asyncio.sleep(0.01)

        status = cache.get_status()
        assert status.is_initialized is False
        assert status.state == "uninitialized"
        assert status.categories_count == 0
        assert status.tags_count == 0
        assert cache.get_categories() == []
        assert cache.get_tags() == []
        assert cache.get_category_by_id("1") is None
        assert cache.refresh_task is None
        assert task.done()

        # Repeated calls are harmless.
        cache.destroy()
        assert cache.get_status().is_initialized is False

    @pytest.mark.asyncio
    async def test_reinitialize_after_destroy(self, cache, source):
        """A destroyed cache can be initialized again."""
        await cache.initialize()
        cache.destroy()

        await cache.initialize()

        assert cache.is_initialized is True
        assert len(cache.get_categories()) == 2
        assert source.calls == {"categories": 2, "tags": 2}

    @pytest.mark.asyncio
    async def test_destroy_during_initialize_discards_load(self, cache, source):
        """Results of a load interrupted by destroy() are not published."""
        source.slow_down("categories", 0.1)

        init = asyncio.create_task(cache.initialize())
        await asyncio.sleep(0.02)
        cache.destroy()
        await init

        assert cache.is_initialized is False
        assert cache.get_categories() == []
        assert cache.get_tags() == []
        assert cache.refresh_task is None

    @pytest.mark.asyncio
    async def test_refresh_contains_unexpected_source_errors(self, cache):
        """Unexpected source exceptions are contained by refresh()."""
        cache.source.fetch_all = AsyncMock(side_effect=RuntimeError("connection reset"))

        outcome = await cache.refresh()

        assert outcome == {"categories": False, "tags": False}
        assert cache.get_categories() == []

    @pytest.mark.asyncio
    async def test_metrics_are_recorded(self, source):
        """Refresh outcomes and item counts reach the metrics registry."""
        metrics = MetricsCollector("reference-cache")
        cache = ReferenceDataCache(source, refresh_interval=60, metrics=metrics)
        try:
            await cache.initialize()
            source.fail("tags")
            await cache.refresh()
            cache.get_categories_by_ids(["1", "nope", "nada"])
        finally:
            await cache.shutdown()

        registry = metrics.registry
        assert registry.get_sample_value(
            "reference_cache_refresh_total", {"collection": "categories", "status": "ok"}
        ) == 2
        assert registry.get_sample_value(
            "reference_cache_refresh_total", {"collection": "tags", "status": "error"}
        ) == 1
        assert registry.get_sample_value(
            "reference_cache_lookup_misses_total", {"collection": "categories"}
        ) == 2
        # shutdown() clears the collections
        assert registry.get_sample_value("reference_cache_items", {"collection": "categories"}) == 0

    @pytest.mark.asyncio
    async def test_periodic_refresh_keeps_fixed_rate(self, source):
        """Fetch time does not stretch the period between refresh ticks."""
        source.slow_down("categories", 0.06)
        source.slow_down("tags", 0.06)
        cache = ReferenceDataCache(source, refresh_interval=0.1, fetch_timeout=1)
        try:
            await cache.initialize()
            await asyncio.sleep(0.65)
        finally:
            await cache.shutdown()

        ticks = source.started_at["categories"][1:]
        assert len(ticks) >= 4
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        mean_gap = sum(gaps) / len(gaps)
        # interval + fetch time would be 0.16
        assert 0.08 < mean_gap < 0.14

    @pytest.mark.asyncio
    async def test_periodic_refresh_skips_overdue_ticks(self, source):
        """A sync slower than the interval does not trigger back-to-back catch-up syncs."""
        source.slow_down("categories", 0.25)
        cache = ReferenceDataCache(source, refresh_interval=0.1, fetch_timeout=1)
        try:
            await cache.initialize()
            await asyncio.sleep(1.0)
        finally:
            await cache.shutdown()

        ticks = source.started_at["categories"][1:]
        assert len(ticks) >= 2
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        # catching up would start the next sync as soon as the last one ends (0.25)
        assert min(gaps) >= 0.28

    def test_rejects_non_positive_interval(self):
        """Refresh interval must be positive."""
        with pytest.raises(ValueError):
            ReferenceDataCache(InMemoryReferenceSource(), refresh_interval=0)
