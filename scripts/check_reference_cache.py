#!/usr/bin/env python3
"""
Load the category/tag reference cache once against a live Supabase project.

Useful from a developer workstation or CI job to confirm the reference
tables are reachable and to see how long a full load takes. Prints the cache
status (and optionally the cached rows) as JSON.
"""

import argparse
import asyncio
import json
import os
import sys
import time
from pathlib import Path

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from service_reference_cache.app.adapters.supabase_client import SupabaseReferenceSource  # noqa: E402
from service_reference_cache.app.cache.reference_cache import ReferenceDataCache  # noqa: E402


async def check(
    *,
    supabase_url: str,
    supabase_key: str,
    fetch_timeout: float,
    include_rows: bool,
) -> dict:
    """Initialize a throwaway cache and return its status summary."""
    source = SupabaseReferenceSource(supabase_url, supabase_key or None)
    cache = ReferenceDataCache(source, fetch_timeout=fetch_timeout)

    start = time.perf_counter()
    try:
        await cache.initialize()
        summary = {
            "load_ms": round((time.perf_counter() - start) * 1000, 2),
            "status": cache.get_status().model_dump(mode="json"),
        }
        if include_rows:
            summary["categories"] = [item.model_dump(mode="json") for item in cache.get_categories()]
            summary["tags"] = [item.model_dump(mode="json") for item in cache.get_tags()]
        return summary
    finally:
        await cache.shutdown()
        await source.close()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load and inspect the category/tag reference cache.")
    parser.add_argument("--supabase-url", default=os.getenv("BEBETTER_SUPABASE_URL", "http://localhost:54321"), help="Supabase project URL")
    parser.add_argument("--supabase-key", default=os.getenv("BEBETTER_SUPABASE_KEY", ""), help="Supabase anon or service key")
    parser.add_argument("--fetch-timeout", type=float, default=float(os.getenv("BEBETTER_CACHE_FETCH_TIMEOUT_SECONDS", 5)), help="Per-table fetch timeout in seconds")
    parser.add_argument("--rows", action="store_true", help="Include the cached rows in the output")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        summary = asyncio.run(
            check(
                supabase_url=args.supabase_url,
                supabase_key=args.supabase_key,
                fetch_timeout=args.fetch_timeout,
                include_rows=args.rows,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[reference-cache] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    # The cache swallows fetch errors; surface an empty load as a failure here.
    status = summary["status"]
    return 0 if status["last_refreshed"]["categories"] and status["last_refreshed"]["tags"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
