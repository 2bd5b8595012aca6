# Overview: Offline product repository; local mirror of server products for lookup and stock keeping.

"""
Product Repository

Products are mirrored read-mostly on the POS device. Stock is the one field the
device changes often, so update_stock shares the conflict retry of update().

STOCK: never stored negative; a subtract below zero clamps to 0.
"""

from __future__ import annotations

import re

from flask import current_app

from ..validation import (
    DocumentPolicy,
    NotFoundError,
    OfflineStoreError,
    ValidationError,
    enforce_rules_price,
    validate_document,
)
from .offline_repository import OfflineRepository, failure


PRODUCT_POLICY = DocumentPolicy(
    required_on_create=frozenset({"name"}),
    field_types={
        "name": "string",
        "sku": "string",
        "description": "string",
        "category_id": "string",
        "price": "number",
        "buying_price": "number",
        "stock_quantity": "integer",
    },
    non_negative=frozenset({"price", "buying_price", "stock_quantity"}),
)

STOCK_OPERATIONS = ("set", "add", "subtract")


class ProductRepository(OfflineRepository):
    entity_type = "product"
    plural = "products"
    policy = PRODUCT_POLICY
    default_sort = [{"name": "asc"}]

    def prepare_create(self, cleaned: dict) -> dict:
        enforce_rules_price(cleaned, "price", "buying_price")
        cleaned.setdefault("stock_quantity", 0)
        return cleaned

    def prepare_update(self, current: dict, patch: dict) -> dict:
        enforce_rules_price(patch, "price", "buying_price")
        return current

    def find_all(
        self,
        limit: int | None = None,
        skip: int = 0,
        selector: dict | None = None,
        sort: list | None = None,
        *,
        category_id: str | None = None,
        search: str | None = None,
    ) -> dict:
        query = dict(selector or {})
        if category_id:
            query["category_id"] = category_id
        if search:
            query["name"] = {"$regex": f"(?i){re.escape(search)}"}
        return super().find_all(limit=limit, skip=skip, selector=query, sort=sort)

    def find_by_sku(self, sku: str) -> dict:
        try:
            docs = self.store.query(selector={"type": self.entity_type, "sku": sku}, limit=1)
        except OfflineStoreError as exc:
            return failure(exc)
        if not docs:
            return failure(NotFoundError(self.entity_type, sku))
        return self._entity_result(docs[0])

    def update_stock(self, doc_id: str, quantity, operation: str = "set") -> dict:
        try:
            if operation not in STOCK_OPERATIONS:
                raise ValidationError(f"operation must be one of: {', '.join(STOCK_OPERATIONS)}")
            quantity = validate_document(
                {"stock_quantity": quantity},
                DocumentPolicy(field_types={"stock_quantity": "integer"}),
                partial=True,
            )["stock_quantity"]
            if quantity is None:
                raise ValidationError("quantity is required")

            def _mutate(current: dict) -> dict:
                on_hand = current.get("stock_quantity") or 0
                if operation == "add":
                    new_quantity = on_hand + quantity
                elif operation == "subtract":
                    new_quantity = on_hand - quantity
                else:
                    new_quantity = quantity
                return {**current, "stock_quantity": max(0, new_quantity)}

            doc = self._update_with_retry(doc_id, _mutate)
        except OfflineStoreError as exc:
            current_app.logger.warning("Error updating stock for product %s: %s", doc_id, exc)
            return failure(exc)
        return self._entity_result(doc)

    def get_low_stock_products(self, threshold: int = 10) -> dict:
        try:
            docs = self.store.query(
                selector={"type": self.entity_type, "stock_quantity": {"$lte": threshold}},
                sort=[{"stock_quantity": "asc"}],
            )
        except OfflineStoreError as exc:
            return failure(exc)
        return {"success": True, "products": docs}

    def get_products_by_category(self, category_id: str) -> dict:
        try:
            docs = self.store.query(
                selector={"type": self.entity_type, "category_id": category_id},
                sort=[{"name": "asc"}],
            )
        except OfflineStoreError as exc:
            return failure(exc)
        return {"success": True, "products": docs}

    def bulk_create(self, products_data: list[dict]) -> dict:
        products = []
        errors = []
        for index, data in enumerate(products_data or []):
            try:
                products.append(self._build_new(data))
            except OfflineStoreError as exc:
                errors.append({"index": index, "error": exc.kind.value, "reason": str(exc)})

        created = []
        for product, result in zip(products, self.store.bulk_docs(products)):
            if result.get("ok"):
                created.append({**product, "id": product["_id"], "_rev": result["rev"]})
            else:
                errors.append(result)

        return {"success": True, "products": created, "errors": errors}

    def bulk_update_stock(self, stock_updates: list[dict]) -> dict:
        """stock_updates: [{"product_id", "quantity", "operation"}]"""
        successful = 0
        errors = []
        for update in stock_updates or []:
            product_id = update.get("product_id")
            result = self.update_stock(product_id, update.get("quantity"), update.get("operation", "set"))
            if result["success"]:
                successful += 1
            else:
                errors.append({"product_id": product_id, "error": result["error"]})

        return {
            "success": True,
            "successful": successful,
            "failed": len(errors),
            "errors": errors,
        }

    def get_changes(self, since: int = 0) -> dict:
        try:
            feed = self.store.changes(since)
        except OfflineStoreError as exc:
            return failure(exc)
        return {"success": True, "changes": feed["results"], "last_seq": feed["last_seq"]}
