"""
Reference Cache Service package for the Be Better backend.

Keeps the small reference collections (categories and tags) in process
memory so that content listing and authoring paths can resolve ids to
display data without a database round-trip per request.

Structure:
- app.main: FastAPI app, routes, and startup/shutdown wiring.
- app.models: Category, Tag and cache view models.
- app.cache: The time-refreshed read-through cache.
- app.adapters: Supabase (PostgREST) source for reference rows.
- app.domain: Helpers that consume the cache (post relation assembly).
"""
