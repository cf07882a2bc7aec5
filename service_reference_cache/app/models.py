"""
Data models for the Reference Cache Service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field


class ReferenceEntity(BaseModel):
    """Common shape of a cached reference row."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Primary key")
    name: str = Field(..., description="Display name")
    slug: Optional[str] = Field(None, description="URL slug")
    created_at: datetime = Field(..., description="Creation timestamp")


class Category(ReferenceEntity):
    """Blog category."""

    description: Optional[str] = Field(None, description="Category description")
    color: Optional[str] = Field(None, description="Display color")


class Tag(ReferenceEntity):
    """Blog tag."""


T = TypeVar("T", bound=ReferenceEntity)


@dataclass(frozen=True)
class CacheSnapshot(Generic[T]):
    """One refresh cycle's worth of a collection, with its id index."""

    items: Tuple[T, ...] = ()
    index: Dict[str, T] = field(default_factory=dict)
    last_refreshed_at: Optional[datetime] = None

    @classmethod
    def build(cls, items: List[T], refreshed_at: datetime) -> "CacheSnapshot[T]":
        """Create a snapshot whose index is derived from ``items``."""
        frozen_items = tuple(items)
        return cls(
            items=frozen_items,
            index={item.id: item for item in frozen_items},
            last_refreshed_at=refreshed_at,
        )


@dataclass
class LookupResult(Generic[T]):
    """Outcome of a strict batch lookup."""

    found: List[T] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


class LastRefreshed(BaseModel):
    """Timestamps of the last successful refresh per collection."""

    categories: Optional[datetime] = None
    tags: Optional[datetime] = None


class CacheStatus(BaseModel):
    """Debug view of the cache."""

    is_initialized: bool
    state: str
    categories_count: int
    tags_count: int
    last_refreshed: LastRefreshed
