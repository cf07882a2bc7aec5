"""
Domain utilities for the Reference Cache Service.
"""

from .post_relations import attach_relations, attach_relations_to_post, invalid_relation_fields

__all__ = [
    "attach_relations",
    "attach_relations_to_post",
    "invalid_relation_fields",
]
