# Overview: Flask API routes for offline sales; parses input and returns JSON responses.

# backend/possync/routes/sales.py
"""
Offline sales routes.

A sale is recorded locally first (sync_status "pending") and pushed to the
server later. Synced sales are frozen; edits are rejected with 400.
"""
from flask import Blueprint, request, current_app

from ..services.sales_repository import SalesRepository
from possync.time_utils import parse_iso_datetime
from ..validation import result_status

sales_bp = Blueprint("offline_sales", __name__, url_prefix="/api/offline/sales")


def _date_arg(name: str):
    """Optional ISO date/datetime query param. A bare date covers the whole UTC day."""
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        dt = parse_iso_datetime(raw)
    except ValueError:
        raise ValueError(f"{name} must be an ISO date")
    return dt.date() if len(raw) == 10 else dt


def _bad_request(message: str):
    return {"success": False, "error": message, "error_kind": "validation"}, 400


@sales_bp.get("")
def list_sales():
    """
    List sales, newest first.

    Query params:
    - limit, skip: int (optional)
    - start_date, end_date: ISO date (optional, inclusive UTC days)
    - cashier_id: str (optional)
    - payment_method: str (optional)
    """
    try:
        start_date = _date_arg("start_date")
        end_date = _date_arg("end_date")
    except ValueError as e:
        return _bad_request(str(e))

    result = SalesRepository().find_all(
        limit=request.args.get("limit", type=int),
        skip=request.args.get("skip", default=0, type=int),
        start_date=start_date,
        end_date=end_date,
        cashier_id=request.args.get("cashier_id"),
        payment_method=request.args.get("payment_method"),
    )
    return result, result_status(result)


@sales_bp.post("")
def create_sale():
    payload = request.get_json(silent=True) or {}
    result = SalesRepository().create_sale(payload)
    if result["success"]:
        sale = result["sale"]
        current_app.logger.info("Sale recorded offline: %s total=%s", sale["id"], sale.get("total_amount"))
    return result, result_status(result, 201)


@sales_bp.get("/pending")
def pending_sales():
    result = SalesRepository().get_pending_sales()
    return result, result_status(result)


@sales_bp.post("/mark-synced")
def mark_sales_synced():
    """Body: {"sale_ids": [...]}. Already synced sales are reported in errors."""
    payload = request.get_json(silent=True) or {}
    sale_ids = payload.get("sale_ids")
    if not isinstance(sale_ids, list) or not sale_ids:
        return _bad_request("sale_ids must be a non-empty list")
    result = SalesRepository().mark_as_synced(sale_ids)
    return result, 200


@sales_bp.get("/sync-status/<string:status>")
def sales_by_sync_status(status: str):
    result = SalesRepository().find_by_sync_status(status, limit=request.args.get("limit", type=int))
    return result, result_status(result)


@sales_bp.get("/analytics/daily")
def daily_sales():
    try:
        day = _date_arg("date")
    except ValueError as e:
        return _bad_request(str(e))
    result = SalesRepository().get_daily_sales(day)
    return result, result_status(result)


@sales_bp.get("/analytics/monthly")
def monthly_sales():
    year = request.args.get("year", type=int)
    month = request.args.get("month", type=int)
    if year is None or month is None:
        return _bad_request("year and month are required")
    result = SalesRepository().get_monthly_sales(year, month)
    return result, result_status(result)


@sales_bp.get("/analytics/top-products")
def top_selling_products():
    try:
        start_date = _date_arg("start_date")
        end_date = _date_arg("end_date")
    except ValueError as e:
        return _bad_request(str(e))
    limit = request.args.get("limit", default=10, type=int)
    result = SalesRepository().get_top_selling_products(limit, start_date, end_date)
    return result, result_status(result)


@sales_bp.get("/analytics/profit")
def profit_analysis():
    try:
        start_date = _date_arg("start_date")
        end_date = _date_arg("end_date")
    except ValueError as e:
        return _bad_request(str(e))
    result = SalesRepository().get_profit_analysis(start_date, end_date)
    return result, result_status(result)


@sales_bp.get("/analytics/cashiers")
def cashier_performance():
    try:
        start_date = _date_arg("start_date")
        end_date = _date_arg("end_date")
    except ValueError as e:
        return _bad_request(str(e))
    result = SalesRepository().get_cashier_performance(start_date, end_date)
    return result, result_status(result)


@sales_bp.get("/<string:sale_id>")
def get_sale(sale_id: str):
    result = SalesRepository().find_by_id(sale_id)
    return result, result_status(result)


@sales_bp.put("/<string:sale_id>")
def update_sale(sale_id: str):
    payload = request.get_json(silent=True) or {}
    result = SalesRepository().update_sale(sale_id, payload)
    return result, result_status(result)


@sales_bp.delete("/<string:sale_id>")
def delete_sale(sale_id: str):
    result = SalesRepository().delete_sale(sale_id)
    return result, result_status(result)


@sales_bp.post("/<string:sale_id>/resolve")
def resolve_sale_conflict(sale_id: str):
    payload = request.get_json(silent=True) or {}
    result = SalesRepository().resolve_conflict(sale_id, payload.get("strategy", "latest"))
    return result, result_status(result)
