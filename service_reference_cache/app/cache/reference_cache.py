"""
Time-refreshed read-through cache for categories and tags.

Readers never await: every accessor works off the snapshot that was last
published for a collection. Refreshes pull whole tables from the source and
publish a new snapshot (items plus id index) with a single assignment, so a
reader sees either the previous cycle or the new one.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TYPE_CHECKING

from pydantic import ValidationError as ModelValidationError

from shared.logging import get_logger
from ..models import CacheSnapshot, CacheStatus, Category, LastRefreshed, LookupResult, T, Tag

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector
    from ..adapters.supabase_client import ReferenceSource


DEFAULT_REFRESH_INTERVAL = 10.0
DEFAULT_FETCH_TIMEOUT = 5.0


class CacheState(str, Enum):
    """Lifecycle of the reference cache."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    REFRESHING = "refreshing"


class ReferenceCollection(Generic[T]):
    """One cached reference table."""

    def __init__(
        self,
        name: str,
        table: str,
        model: Type[T],
        source: "ReferenceSource",
        *,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.name = name
        self.table = table
        self.model = model
        self.source = source
        self.fetch_timeout = fetch_timeout
        self.metrics = metrics
        self.logger = get_logger(f"reference-cache.{name}")
        self._snapshot: CacheSnapshot[T] = CacheSnapshot()

    @property
    def snapshot(self) -> CacheSnapshot[T]:
        return self._snapshot

    async def fetch(self) -> List[T]:
        """Pull and validate every row of the backing table.

        Raises whatever the source raises, or ``asyncio.TimeoutError`` when the
        source does not answer within ``fetch_timeout`` seconds.
        """
        start = time.perf_counter()
        try:
            rows = await asyncio.wait_for(self.source.fetch_all(self.table), timeout=self.fetch_timeout)
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "reference_cache_refresh_duration_seconds",
                    time.perf_counter() - start,
                    collection=self.name,
                )
        return self._parse(rows)

    def _parse(self, rows: Iterable[Dict[str, Any]]) -> List[T]:
        items: List[T] = []
        for row in rows:
            try:
                items.append(self.model.model_validate(row))
            except ModelValidationError as exc:
                self.logger.warning(
                    "Skipping malformed reference row",
                    table=self.table,
                    row_id=row.get("id") if isinstance(row, dict) else None,
                    error=str(exc),
                )
        return items

    def publish(self, items: List[T], refreshed_at: datetime) -> None:
        """Replace the current snapshot."""
        self._snapshot = CacheSnapshot.build(items, refreshed_at)
        if self.metrics:
            self.metrics.set_gauge("reference_cache_items", len(items), collection=self.name)

    def clear(self) -> None:
        self._snapshot = CacheSnapshot()
        if self.metrics:
            self.metrics.set_gauge("reference_cache_items", 0, collection=self.name)

    def all(self) -> List[T]:
        return list(self._snapshot.items)

    def get(self, item_id: str) -> Optional[T]:
        return self._snapshot.index.get(item_id)

    def get_many(self, ids: Iterable[str]) -> List[T]:
        """Resolve ids in request order, dropping the ones that are not cached."""
        return self.resolve(ids).found

    def resolve(self, ids: Iterable[str]) -> LookupResult[T]:
        index = self._snapshot.index
        result: LookupResult[T] = LookupResult()
        for item_id in ids:
            item = index.get(item_id)
            if item is None:
                result.missing.append(item_id)
            else:
                result.found.append(item)

        if result.missing and self.metrics:
            self.metrics.increment_counter(
                "reference_cache_lookup_misses_total",
                amount=len(result.missing),
                collection=self.name,
            )
        return result


class ReferenceDataCache:
    """
    In-process cache of the category and tag reference tables.

    Construct one per process at the composition root and pass it to the
    code that needs it. ``initialize()`` performs the first load and starts
    the background refresh task; ``destroy()`` stops it and drops all data.

    Fetch failures never propagate to readers. The collection that failed
    keeps its previous snapshot and its last refresh time does not move;
    the next tick is the retry.
    """

    def __init__(
        self,
        source: "ReferenceSource",
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        categories_table: str = "categories",
        tags_table: str = "tags",
        metrics: Optional["MetricsCollector"] = None,
    ):
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")

        self.source = source
        self.refresh_interval = refresh_interval
        self.metrics = metrics
        self.logger = get_logger("reference-cache.cache")

        self.categories: ReferenceCollection[Category] = ReferenceCollection(
            "categories", categories_table, Category, source,
            fetch_timeout=fetch_timeout, metrics=metrics,
        )
        self.tags: ReferenceCollection[Tag] = ReferenceCollection(
            "tags", tags_table, Tag, source,
            fetch_timeout=fetch_timeout, metrics=metrics,
        )

        self._state = CacheState.UNINITIALIZED
        self._initialized = False
        self._generation = 0
        self._init_lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: "BaseConfig",
        source: "ReferenceSource",
        metrics: Optional["MetricsCollector"] = None,
    ) -> "ReferenceDataCache":
        """Build a cache from service configuration."""
        return cls(
            source,
            refresh_interval=config.cache_refresh_interval_seconds,
            fetch_timeout=config.cache_fetch_timeout_seconds,
            categories_table=config.categories_table,
            tags_table=config.tags_table,
            metrics=metrics,
        )

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def refresh_task(self) -> Optional[asyncio.Task]:
        """Handle of the background refresh task, if running."""
        return self._refresh_task

    async def initialize(self) -> None:
        """Load both collections once and start the periodic refresh.

        Calling it again once initialized does nothing. A failed initial load
        still completes initialization with empty collections.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            generation = self._generation
            self._state = CacheState.INITIALIZING
            self.logger.info("Initializing reference cache", refresh_interval=self.refresh_interval)

            outcome = await self._sync_all()

            if generation != self._generation:
                # destroy() ran while the initial load was in flight
                self.logger.info("Reference cache destroyed during initialization")
                return

            if not all(outcome.values()):
                self.logger.error(
                    "Initial reference load incomplete; serving empty or partial data",
                    outcome=outcome,
                )

            self._start_periodic_refresh()
            self._initialized = True
            self._state = CacheState.READY
            self.logger.info(
                "Reference cache initialized",
                categories=len(self.categories.snapshot.items),
                tags=len(self.tags.snapshot.items),
            )

    def _start_periodic_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="reference-cache-refresh")

    async def _refresh_loop(self) -> None:
        """Refresh both collections every ``refresh_interval`` seconds.

        Ticks are scheduled at a fixed rate from the loop clock, so the time
        spent fetching does not push later ticks back. A tick that is already
        overdue when the previous sync finishes is skipped.
        """
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.refresh_interval
        while True:
            try:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                await self._sync_all()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.logger.error("Error in reference refresh loop", error=str(exc), exc_info=True)

            next_tick += self.refresh_interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self.refresh_interval) + 1
                next_tick += missed * self.refresh_interval
                self.logger.warning("Reference refresh fell behind", skipped_ticks=missed)

    async def _sync_all(self) -> Dict[str, bool]:
        """Fetch both collections concurrently and publish the ones that succeeded."""
        collections = (self.categories, self.tags)
        async with self._refresh_lock:
            generation = self._generation
            if self._state == CacheState.READY:
                self._state = CacheState.REFRESHING

            try:
                results = await asyncio.gather(
                    *(collection.fetch() for collection in collections),
                    return_exceptions=True,
                )
            finally:
                if self._state == CacheState.REFRESHING:
                    self._state = CacheState.READY

            if generation != self._generation:
                self.logger.debug("Discarding refresh results for a destroyed cache")
                return {collection.name: False for collection in collections}

            refreshed_at = datetime.now(timezone.utc)
            outcome: Dict[str, bool] = {}
            for collection, result in zip(collections, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self.logger.error(
                        "Failed to refresh reference collection",
                        collection=collection.name,
                        table=collection.table,
                        error=str(result) or result.__class__.__name__,
                    )
                    self._record_refresh(collection.name, "error")
                    outcome[collection.name] = False
                    continue

                collection.publish(result, refreshed_at)
                self._record_refresh(collection.name, "ok")
                outcome[collection.name] = True

            self.logger.debug("Reference refresh completed", outcome=outcome)
            return outcome

    def _record_refresh(self, collection: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("reference_cache_refresh_total", collection=collection, status=status)

    async def refresh(self) -> Dict[str, bool]:
        """Force a refresh of both collections outside the timer.

        Returns whether each collection was refreshed. Failures keep the
        previous data and leave the timer alone.
        """
        return await self._sync_all()

    def destroy(self) -> None:
        """Stop the refresh task and drop all cached data."""
        if self._refresh_task is not None:
            if not self._refresh_task.done():
                self._refresh_task.cancel()
            self._refresh_task = None

        self._generation += 1
        self.categories.clear()
        self.tags.clear()
        self._initialized = False
        self._state = CacheState.UNINITIALIZED
        self.logger.info("Reference cache destroyed")

    async def shutdown(self) -> None:
        """``destroy()`` and wait for the refresh task to finish."""
        task = self._refresh_task
        self.destroy()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_categories(self) -> List[Category]:
        return self.categories.all()

    def get_tags(self) -> List[Tag]:
        return self.tags.all()

    def get_category_by_id(self, category_id: str) -> Optional[Category]:
        return self.categories.get(category_id)

    def get_tag_by_id(self, tag_id: str) -> Optional[Tag]:
        return self.tags.get(tag_id)

    def get_categories_by_ids(self, ids: Iterable[str]) -> List[Category]:
        """Categories for ``ids``; unknown ids are silently dropped."""
        return self.categories.get_many(ids)

    def get_tags_by_ids(self, ids: Iterable[str]) -> List[Tag]:
        """Tags for ``ids``; unknown ids are silently dropped."""
        return self.tags.get_many(ids)

    def resolve_category_ids(self, ids: Iterable[str]) -> LookupResult[Category]:
        return self.categories.resolve(ids)

    def resolve_tag_ids(self, ids: Iterable[str]) -> LookupResult[Tag]:
        return self.tags.resolve(ids)

    def get_status(self) -> CacheStatus:
        return CacheStatus(
            is_initialized=self._initialized,
            state=self._state.value,
            categories_count=len(self.categories.snapshot.items),
            tags_count=len(self.tags.snapshot.items),
            last_refreshed=LastRefreshed(
                categories=self.categories.snapshot.last_refreshed_at,
                tags=self.tags.snapshot.last_refreshed_at,
            ),
        )
