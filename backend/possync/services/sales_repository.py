# Overview: Offline sales repository; records sales locally and tracks their sync status.

"""
Sales Repository

SYNC STATUS:
- every sale is created "pending", whatever the payload says
- pending/failed sales are pushed by the reconciler; an acknowledged sale
  becomes "synced" exactly once and is kept locally (mark-and-keep)
- a synced sale is frozen: local edits are rejected so it is never resubmitted
- sync_status only changes through mark_as_synced / mark_as_failed

TOTALS: item totals default to price * quantity; total_amount defaults to the
sum of item totals and must match it when provided.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime

from flask import current_app

from ..validation import (
    DocumentPolicy,
    OfflineStoreError,
    ValidationError,
    enforce_rules_price,
    validate_document,
)
from .offline_repository import OfflineRepository, failure
from possync.time_utils import iso_now, to_utc_z, utcnow


SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"
SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCED, SYNC_FAILED)

SYNC_FIELDS = ("sync_status", "synced_at", "sync_error")

# Derived from the items by apply_sale_totals; never taken from a payload
COMPUTED_FIELDS = ("total_revenue", "total_cost", "profit", "profit_margin")

# Rounding slack allowed between total_amount and the sum of item totals
TOTAL_TOLERANCE = 0.005

SALE_POLICY = DocumentPolicy(
    required_on_create=frozenset({"items"}),
    field_types={
        "items": "list",
        "total_amount": "number",
        "cashier_id": "string",
        "cashier_name": "string",
        "payment_method": "string",
    },
    non_negative=frozenset({"total_amount"}),
)

ITEM_POLICY = DocumentPolicy(
    required_on_create=frozenset({"quantity", "price"}),
    field_types={
        "product_id": "string",
        "name": "string",
        "quantity": "number",
        "price": "number",
        "buying_price": "number",
        "total": "number",
    },
    non_negative=frozenset({"quantity", "price", "buying_price", "total"}),
)


def _money(value: float) -> float:
    return round(value, 2)


def normalize_items(items: list) -> list[dict]:
    if not items:
        raise ValidationError("Sale must contain at least one item")

    normalized = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        try:
            item = validate_document(raw, ITEM_POLICY, partial=False)
        except ValidationError as exc:
            raise ValidationError(f"items[{index}]: {exc}") from exc
        enforce_rules_price(item, "price", "buying_price")
        if item.get("total") is None:
            item["total"] = _money(item["price"] * item["quantity"])
        normalized.append(item)
    return normalized


def apply_sale_totals(sale: dict) -> dict:
    """Validate total_amount against the items and compute cost / profit figures."""
    items = sale["items"]
    items_total = _money(sum(item["total"] for item in items))

    if sale.get("total_amount") is None:
        sale["total_amount"] = items_total
    elif abs(sale["total_amount"] - items_total) > TOTAL_TOLERANCE:
        raise ValidationError(
            f"total_amount {sale['total_amount']} does not match the sum of item totals {items_total}"
        )

    total_revenue = sum((item.get("price") or 0) * (item.get("quantity") or 0) for item in items)
    total_cost = sum((item.get("buying_price") or 0) * (item.get("quantity") or 0) for item in items)
    profit = total_revenue - total_cost

    sale["total_revenue"] = _money(total_revenue)
    sale["total_cost"] = _money(total_cost)
    sale["profit"] = _money(profit)
    sale["profit_margin"] = _money(profit / total_revenue * 100) if total_revenue > 0 else 0
    return sale


def _day_start(value) -> str:
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return f"{value.isoformat()}T00:00:00.000Z"
    if isinstance(value, str) and len(value) == 10:
        return f"{value}T00:00:00.000Z"
    return value


def _day_end(value) -> str:
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, date):
        return f"{value.isoformat()}T23:59:59.999Z"
    if isinstance(value, str) and len(value) == 10:
        return f"{value}T23:59:59.999Z"
    return value


def _created_range(start_date=None, end_date=None) -> dict:
    selector: dict = {}
    if start_date or end_date:
        selector["created_at"] = {}
        if start_date:
            selector["created_at"]["$gte"] = _day_start(start_date)
        if end_date:
            selector["created_at"]["$lte"] = _day_end(end_date)
    return selector


class SalesRepository(OfflineRepository):
    entity_type = "sale"
    plural = "sales"
    policy = SALE_POLICY
    default_sort = [{"created_at": "desc"}]

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def prepare_create(self, cleaned: dict) -> dict:
        cleaned["items"] = normalize_items(cleaned.get("items"))
        for field in SYNC_FIELDS:
            cleaned.pop(field, None)
        cleaned["sync_status"] = SYNC_PENDING
        return apply_sale_totals(cleaned)

    def prepare_update(self, current: dict, patch: dict) -> dict:
        if current.get("sync_status") == SYNC_SYNCED:
            raise ValidationError("Synced sales cannot be modified")
        if "items" in patch:
            current["items"] = normalize_items(patch["items"])
        if "items" in patch or "total_amount" in patch:
            if "total_amount" not in patch:
                current["total_amount"] = None
            apply_sale_totals(current)
        current["sync_status"] = SYNC_PENDING
        current.pop("sync_error", None)
        return current

    def create_sale(self, sale_data: dict) -> dict:
        return self.create(sale_data)

    def update(self, doc_id: str, patch: dict) -> dict:
        patch = {k: v for k, v in (patch or {}).items() if k not in SYNC_FIELDS + COMPUTED_FIELDS}
        return super().update(doc_id, patch)

    def update_sale(self, doc_id: str, patch: dict) -> dict:
        return self.update(doc_id, patch)

    def delete_sale(self, doc_id: str) -> dict:
        return self.delete(doc_id)

    def find_all(
        self,
        limit: int | None = None,
        skip: int = 0,
        selector: dict | None = None,
        sort: list | None = None,
        *,
        start_date=None,
        end_date=None,
        cashier_id: str | None = None,
        payment_method: str | None = None,
    ) -> dict:
        query = dict(selector or {})
        query.update(_created_range(start_date, end_date))
        if cashier_id:
            query["cashier_id"] = cashier_id
        if payment_method:
            query["payment_method"] = payment_method
        return super().find_all(limit=limit, skip=skip, selector=query, sort=sort)

    # -------------------------------------------------------------------------
    # sync status
    # -------------------------------------------------------------------------

    def find_by_sync_status(self, status: str, limit: int | None = None) -> dict:
        if status not in SYNC_STATUSES:
            return failure(ValidationError(f"sync_status must be one of: {', '.join(SYNC_STATUSES)}"))
        try:
            docs = self.store.query(
                selector={"type": self.entity_type, "sync_status": status},
                sort=[{"created_at": "asc"}],
                limit=limit,
            )
        except OfflineStoreError as exc:
            return failure(exc)
        return {"success": True, "sales": docs}

    def get_pending_sales(self) -> dict:
        return self.find_by_sync_status(SYNC_PENDING)

    def _transition(self, sale_ids: list[str], mutate) -> dict:
        updated = 0
        errors = []
        for sale_id in sale_ids or []:
            try:
                self._update_with_retry(sale_id, mutate)
                updated += 1
            except OfflineStoreError as exc:
                errors.append({"id": sale_id, "error": str(exc), "error_kind": exc.kind.value})
        return {"success": True, "updated": updated, "errors": errors}

    def mark_as_synced(self, sale_ids: list[str]) -> dict:
        """pending/failed -> synced. An already synced sale is reported, never touched."""
        def _mutate(current: dict) -> dict:
            if current.get("sync_status") == SYNC_SYNCED:
                raise ValidationError("Sale already synced")
            current["sync_status"] = SYNC_SYNCED
            current["synced_at"] = iso_now()
            current.pop("sync_error", None)
            return current

        result = self._transition(sale_ids, _mutate)
        if result["updated"]:
            current_app.logger.info("Marked %d sale(s) as synced", result["updated"])
        return result

    def mark_as_failed(self, sale_ids: list[str], error: str | None = None) -> dict:
        """pending -> failed, keeping the server's error for the next attempt."""
        def _mutate(current: dict) -> dict:
            if current.get("sync_status") == SYNC_SYNCED:
                raise ValidationError("Sale already synced")
            current["sync_status"] = SYNC_FAILED
            current["sync_error"] = error or "Sync failed"
            return current

        return self._transition(sale_ids, _mutate)

    # -------------------------------------------------------------------------
    # analytics for offline operation
    # -------------------------------------------------------------------------

    def _sales_between(self, start_date=None, end_date=None) -> list[dict]:
        selector = {"type": self.entity_type}
        selector.update(_created_range(start_date, end_date))
        return self.store.query(selector=selector, sort=[{"created_at": "asc"}])

    def get_daily_sales(self, day: date | None = None) -> dict:
        day = day or utcnow().date()
        if isinstance(day, datetime):
            day = day.date()
        try:
            sales = self._sales_between(day, day)
        except OfflineStoreError as exc:
            return failure(exc)

        total_revenue = _money(sum(s.get("total_amount") or 0 for s in sales))
        total_profit = _money(sum(s.get("profit") or 0 for s in sales))
        return {
            "success": True,
            "analytics": {
                "date": day.isoformat(),
                "total_sales": len(sales),
                "total_revenue": total_revenue,
                "total_profit": total_profit,
                "average_sale": _money(total_revenue / len(sales)) if sales else 0,
                "sales": sales,
            },
        }

    def get_monthly_sales(self, year: int, month: int) -> dict:
        if not 1 <= int(month) <= 12:
            return failure(ValidationError("month must be between 1 and 12"))
        if not date.min.year <= int(year) <= date.max.year:
            return failure(ValidationError(f"year must be between {date.min.year} and {date.max.year}"))
        first_day = date(int(year), int(month), 1)
        last_day = date(int(year), int(month), calendar.monthrange(int(year), int(month))[1])
        try:
            sales = self._sales_between(first_day, last_day)
        except OfflineStoreError as exc:
            return failure(exc)

        daily: dict[int, dict] = {}
        for sale in sales:
            day = int(sale["created_at"][8:10])
            bucket = daily.setdefault(day, {"sales_count": 0, "revenue": 0, "profit": 0})
            bucket["sales_count"] += 1
            bucket["revenue"] = _money(bucket["revenue"] + (sale.get("total_amount") or 0))
            bucket["profit"] = _money(bucket["profit"] + (sale.get("profit") or 0))

        return {
            "success": True,
            "analytics": {
                "year": int(year),
                "month": int(month),
                "total_sales": len(sales),
                "total_revenue": _money(sum(s.get("total_amount") or 0 for s in sales)),
                "total_profit": _money(sum(s.get("profit") or 0 for s in sales)),
                "daily_breakdown": daily,
            },
        }

    def get_top_selling_products(self, limit: int = 10, start_date=None, end_date=None) -> dict:
        try:
            sales = self._sales_between(start_date, end_date)
        except OfflineStoreError as exc:
            return failure(exc)

        stats: dict[str, dict] = {}
        for sale in sales:
            for item in sale.get("items") or []:
                product_id = item.get("product_id") or item.get("id")
                entry = stats.setdefault(product_id, {
                    "product_id": product_id,
                    "product_name": item.get("name") or item.get("product_name"),
                    "total_quantity": 0,
                    "total_revenue": 0,
                    "total_profit": 0,
                    "sales_count": 0,
                })
                quantity = item.get("quantity") or 0
                price = item.get("price") or 0
                entry["total_quantity"] += quantity
                entry["total_revenue"] = _money(entry["total_revenue"] + price * quantity)
                entry["total_profit"] = _money(
                    entry["total_profit"] + (price - (item.get("buying_price") or 0)) * quantity
                )
                entry["sales_count"] += 1

        top = sorted(stats.values(), key=lambda s: (-s["total_quantity"], str(s["product_id"])))
        return {"success": True, "products": top[:limit]}

    def get_profit_analysis(self, start_date=None, end_date=None) -> dict:
        try:
            sales = self._sales_between(start_date, end_date)
        except OfflineStoreError as exc:
            return failure(exc)

        total_revenue = sum(s.get("total_revenue") or s.get("total_amount") or 0 for s in sales)
        total_cost = sum(s.get("total_cost") or 0 for s in sales)
        total_profit = sum(s.get("profit") or 0 for s in sales)

        return {
            "success": True,
            "analysis": {
                "total_revenue": _money(total_revenue),
                "total_cost": _money(total_cost),
                "total_profit": _money(total_profit),
                "profit_margin": _money(total_profit / total_revenue * 100) if total_revenue > 0 else 0,
                "sales_count": len(sales),
                "average_profit_per_sale": _money(total_profit / len(sales)) if sales else 0,
            },
        }

    def get_cashier_performance(self, start_date=None, end_date=None) -> dict:
        try:
            sales = self._sales_between(start_date, end_date)
        except OfflineStoreError as exc:
            return failure(exc)

        stats: dict[str, dict] = {}
        for sale in sales:
            cashier_id = sale.get("cashier_id") or "unknown"
            entry = stats.setdefault(cashier_id, {
                "cashier_id": cashier_id,
                "cashier_name": sale.get("cashier_name") or "Unknown",
                "sales_count": 0,
                "total_revenue": 0,
                "total_profit": 0,
            })
            entry["sales_count"] += 1
            entry["total_revenue"] = _money(entry["total_revenue"] + (sale.get("total_amount") or 0))
            entry["total_profit"] = _money(entry["total_profit"] + (sale.get("profit") or 0))

        performance = sorted(stats.values(), key=lambda s: (-s["total_revenue"], s["cashier_id"]))
        return {"success": True, "performance": performance}
