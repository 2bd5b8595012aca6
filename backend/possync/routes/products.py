# Overview: Flask API routes for offline products; parses input and returns JSON responses.

# backend/possync/routes/products.py
"""
Offline product routes.

Products are a local mirror of the server catalogue: lookups (by id, SKU,
category, search) must work with no network. Stock adjustments made at the
till are written locally and pushed by the reconciler.
"""
from flask import Blueprint, request

from ..services.product_repository import ProductRepository
from ..validation import result_status

products_bp = Blueprint("offline_products", __name__, url_prefix="/api/offline/products")


@products_bp.get("")
def list_products():
    """
    List products sorted by name.

    Query params:
    - limit: int (optional)
    - skip: int (optional)
    - category_id: str (optional) - only products in this category
    - search: str (optional) - case-insensitive match on name
    """
    result = ProductRepository().find_all(
        limit=request.args.get("limit", type=int),
        skip=request.args.get("skip", default=0, type=int),
        category_id=request.args.get("category_id"),
        search=request.args.get("search"),
    )
    return result, result_status(result)


@products_bp.post("")
def create_product():
    payload = request.get_json(silent=True) or {}
    result = ProductRepository().create(payload)
    return result, result_status(result, 201)


@products_bp.post("/bulk")
def bulk_create_products():
    """Body: {"products": [...]}. Partial success is reported per product."""
    payload = request.get_json(silent=True) or {}
    products = payload.get("products")
    if not isinstance(products, list):
        return {"success": False, "error": "products must be a list", "error_kind": "validation"}, 400
    result = ProductRepository().bulk_create(products)
    return result, 201


@products_bp.get("/low-stock")
def low_stock_products():
    threshold = request.args.get("threshold", default=10, type=int)
    result = ProductRepository().get_low_stock_products(threshold)
    return result, result_status(result)


@products_bp.get("/changes")
def product_changes():
    since = request.args.get("since", default=0, type=int)
    result = ProductRepository().get_changes(since)
    return result, result_status(result)


@products_bp.get("/modified")
def modified_products():
    """
    Products updated at or after a point in time, for reconciliation.

    Query params:
    - since: ISO-8601 timestamp (optional, every live product when omitted)
    """
    result = ProductRepository().get_modified_since(request.args.get("since"))
    return result, result_status(result)


@products_bp.get("/sku/<string:sku>")
def get_product_by_sku(sku: str):
    result = ProductRepository().find_by_sku(sku)
    return result, result_status(result)


@products_bp.get("/<string:product_id>")
def get_product(product_id: str):
    result = ProductRepository().find_by_id(product_id)
    return result, result_status(result)


@products_bp.put("/<string:product_id>")
def update_product(product_id: str):
    payload = request.get_json(silent=True) or {}
    result = ProductRepository().update(product_id, payload)
    return result, result_status(result)


@products_bp.delete("/<string:product_id>")
def delete_product(product_id: str):
    result = ProductRepository().delete(product_id)
    return result, result_status(result)


@products_bp.post("/<string:product_id>/stock")
def update_product_stock(product_id: str):
    """Body: {"quantity": int, "operation": "set" | "add" | "subtract"}"""
    payload = request.get_json(silent=True) or {}
    result = ProductRepository().update_stock(
        product_id,
        payload.get("quantity"),
        payload.get("operation", "set"),
    )
    return result, result_status(result)


@products_bp.post("/<string:product_id>/resolve")
def resolve_product_conflict(product_id: str):
    payload = request.get_json(silent=True) or {}
    result = ProductRepository().resolve_conflict(product_id, payload.get("strategy", "latest"))
    return result, result_status(result)
