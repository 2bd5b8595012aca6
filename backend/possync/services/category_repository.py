# Overview: Offline category repository; categories sorted by name.

from __future__ import annotations

from ..validation import DocumentPolicy
from .offline_repository import OfflineRepository


CATEGORY_POLICY = DocumentPolicy(
    required_on_create=frozenset({"name"}),
    field_types={"name": "string", "description": "string"},
)


class CategoryRepository(OfflineRepository):
    entity_type = "category"
    plural = "categories"
    policy = CATEGORY_POLICY
    default_sort = [{"name": "asc"}]
