"""
Attach cached categories and tags to blog post rows.

Posts store their relations as ``category_ids`` / ``tag_ids`` arrays. Listing
pages resolve those arrays through the reference cache instead of joining
the relation tables, so ids that are unknown to the cache simply do not
show up on the post.
"""

from typing import Any, Dict, Iterable, List, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..cache.reference_cache import ReferenceDataCache


RELATION_FIELDS = ("category_ids", "tag_ids")


def relation_ids(value: Any) -> List[str]:
    """Ids held in a relation array; anything that is not a list or tuple counts as empty."""
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def invalid_relation_fields(post: Dict[str, Any]) -> List[str]:
    """Relation fields of ``post`` that are set but are not lists of strings."""
    invalid = []
    for name in RELATION_FIELDS:
        value = post.get(name)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
            invalid.append(name)
    return invalid


def attach_relations_to_post(post: Dict[str, Any], cache: "ReferenceDataCache") -> Dict[str, Any]:
    """Return a copy of ``post`` with ``categories`` and ``tags`` filled in."""
    category_ids = relation_ids(post.get("category_ids"))
    tag_ids = relation_ids(post.get("tag_ids"))

    return {
        **post,
        "categories": [category.model_dump(mode="json") for category in cache.get_categories_by_ids(category_ids)],
        "tags": [tag.model_dump(mode="json") for tag in cache.get_tags_by_ids(tag_ids)],
    }


def attach_relations(posts: Iterable[Dict[str, Any]], cache: "ReferenceDataCache") -> List[Dict[str, Any]]:
    return [attach_relations_to_post(post, cache) for post in posts]
