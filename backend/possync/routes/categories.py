# Overview: Flask API routes for offline categories; parses input and returns JSON responses.

# backend/possync/routes/categories.py
"""
Offline category routes.

Thin wrappers around CategoryRepository: repository results are returned as-is,
with the HTTP status derived from the result's error_kind.
"""
from flask import Blueprint, request, current_app

from ..services.category_repository import CategoryRepository
from ..validation import result_status

categories_bp = Blueprint("offline_categories", __name__, url_prefix="/api/offline/categories")


@categories_bp.get("")
def list_categories():
    """
    List categories sorted by name.

    Query params:
    - limit: int (optional, default OFFLINE_DEFAULT_LIMIT)
    - skip: int (optional, default 0)
    """
    limit = request.args.get("limit", type=int)
    skip = request.args.get("skip", default=0, type=int)

    result = CategoryRepository().find_all(limit=limit, skip=skip)
    return result, result_status(result)


@categories_bp.post("")
def create_category():
    payload = request.get_json(silent=True) or {}
    result = CategoryRepository().create(payload)
    if result["success"]:
        current_app.logger.info("Category created offline: %s", result["category"]["id"])
    return result, result_status(result, 201)


@categories_bp.get("/modified")
def modified_categories():
    """Categories updated at or after ?since= (ISO-8601)."""
    result = CategoryRepository().get_modified_since(request.args.get("since"))
    return result, result_status(result)


@categories_bp.get("/<string:category_id>")
def get_category(category_id: str):
    result = CategoryRepository().find_by_id(category_id)
    return result, result_status(result)


@categories_bp.put("/<string:category_id>")
def update_category(category_id: str):
    payload = request.get_json(silent=True) or {}
    result = CategoryRepository().update(category_id, payload)
    return result, result_status(result)


@categories_bp.delete("/<string:category_id>")
def delete_category(category_id: str):
    result = CategoryRepository().delete(category_id)
    return result, result_status(result)


@categories_bp.post("/<string:category_id>/resolve")
def resolve_category_conflict(category_id: str):
    """Resolve conflicting revisions. Body: {"strategy": "latest" | "merge" | "manual"}"""
    payload = request.get_json(silent=True) or {}
    result = CategoryRepository().resolve_conflict(category_id, payload.get("strategy", "latest"))
    return result, result_status(result)
