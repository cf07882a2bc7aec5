"""
Reference cache package.

Snapshots are replaced wholesale on every refresh, never mutated in place.
A failed refresh keeps serving the previous snapshot.
"""

from .reference_cache import CacheState, ReferenceCollection, ReferenceDataCache

__all__ = [
    "CacheState",
    "ReferenceCollection",
    "ReferenceDataCache",
]
