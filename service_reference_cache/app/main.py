"""
Reference Cache service for the Be Better backend.

Owns the process-wide ReferenceDataCache: it is built here, initialized on
startup, torn down on shutdown and handed to the routes that read it.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError, ValidationError
from .adapters.supabase_client import ReferenceSource, SupabaseReferenceSource
from .cache.reference_cache import ReferenceDataCache
from .domain.post_relations import attach_relations, invalid_relation_fields
from .models import CacheStatus, Category, Tag


SERVICE_NAME = "reference-cache"
SERVICE_PORT = 8020


class IdsRequest(BaseModel):
    """Batch lookup request."""
    ids: List[str] = Field(default_factory=list, description="Ids to resolve")


class LookupResponse(BaseModel):
    """Batch lookup response listing unresolved ids."""
    found: List[Dict[str, Any]]
    missing: List[str]


class PostsRequest(BaseModel):
    """Posts carrying category_ids / tag_ids arrays."""
    posts: List[Dict[str, Any]] = Field(default_factory=list, description="Post rows")


class ReferenceCacheService(BaseService):
    """Reference Cache service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        source: Optional[ReferenceSource] = None,
        cache: Optional[ReferenceDataCache] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config=config)

        if cache is not None:
            source = cache.source
        self._owns_source = source is None
        self.source = source if source is not None else SupabaseReferenceSource(
            self.config.supabase_url,
            self.config.supabase_key,
            timeout=self.config.http_timeout_seconds,
        )
        self.cache = cache or ReferenceDataCache.from_config(self.config, self.source, metrics=self.metrics)

        self._setup_reference_routes()

    async def _on_startup(self) -> None:
        await self.cache.initialize()

    async def _on_shutdown(self) -> None:
        await self.cache.shutdown()
        if self._owns_source and isinstance(self.source, SupabaseReferenceSource):
            await self.source.close()

    async def _check_dependencies(self) -> Dict[str, Any]:
        status = self.cache.get_status()
        return {"reference_cache": "ok" if status.is_initialized else "initializing"}

    def _setup_reference_routes(self):
        """Set up reference data routes."""

        @self.app.get("/categories", response_model=List[Category])
        async def list_categories():
            """All cached categories, ordered by name."""
            return self.cache.get_categories()

        @self.app.get("/categories/{category_id}", response_model=Category)
        async def get_category(category_id: str):
            category = self.cache.get_category_by_id(category_id)
            if category is None:
                raise NotFoundError("category", category_id)
            return category

        @self.app.post("/categories/lookup", response_model=LookupResponse)
        async def lookup_categories(request: IdsRequest):
            """Resolve category ids, reporting the ones that are not cached."""
            result = self.cache.resolve_category_ids(request.ids)
            return LookupResponse(
                found=[item.model_dump(mode="json") for item in result.found],
                missing=result.missing,
            )

        @self.app.get("/tags", response_model=List[Tag])
        async def list_tags():
            """All cached tags, ordered by name."""
            return self.cache.get_tags()

        @self.app.get("/tags/{tag_id}", response_model=Tag)
        async def get_tag(tag_id: str):
            tag = self.cache.get_tag_by_id(tag_id)
            if tag is None:
                raise NotFoundError("tag", tag_id)
            return tag

        @self.app.post("/tags/lookup", response_model=LookupResponse)
        async def lookup_tags(request: IdsRequest):
            """Resolve tag ids, reporting the ones that are not cached."""
            result = self.cache.resolve_tag_ids(request.ids)
            return LookupResponse(
                found=[item.model_dump(mode="json") for item in result.found],
                missing=result.missing,
            )

        @self.app.post("/posts/relations")
        async def post_relations(request: PostsRequest):
            """Attach cached categories and tags to each post."""
            problems = {}
            for position, post in enumerate(request.posts):
                fields = invalid_relation_fields(post)
                if fields:
                    problems[str(position)] = fields
            if problems:
                raise ValidationError(
                    "category_ids and tag_ids must be arrays of ids",
                    details={"posts": problems},
                )
            return {"posts": attach_relations(request.posts, self.cache)}

        @self.app.get("/cache/status", response_model=CacheStatus)
        async def cache_status():
            return self.cache.get_status()

        @self.app.post("/cache/refresh")
        async def cache_refresh():
            """Force an out-of-band refresh of both collections."""
            outcome = await self.cache.refresh()
            self.logger.info("Forced reference refresh", outcome=outcome)
            return {
                "refreshed": outcome,
                "status": self.cache.get_status().model_dump(mode="json"),
            }


def create_app(config: Optional[ServiceConfig] = None) -> FastAPI:
    """Create the FastAPI application."""
    return ReferenceCacheService(config or get_config(SERVICE_NAME, SERVICE_PORT)).app


if __name__ == "__main__":
    ReferenceCacheService().run()
