"""
Adapters package for the Reference Cache Service.

Contains the clients the cache pulls reference rows from. An adapter only
has to honor ``fetch_all(table)``: rows ordered by name ascending, errors
mapped to shared errors.
"""

from .supabase_client import ReferenceSource, SupabaseReferenceSource

__all__ = [
    "ReferenceSource",
    "SupabaseReferenceSource",
]
