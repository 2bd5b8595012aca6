# Overview: Offline self-test harness; exercises the local store end to end on a live device.

"""
Self-test Service

Runs against the real local store (not a fake) so a cashier or technician can
confirm offline storage works on the device. Test documents use the
"test_product_" / "test_sale_" id prefixes and are removed by clear_test_data().
"""

from __future__ import annotations

from flask import current_app

from ..validation import OfflineStoreError
from .conventions_service import add_timestamps, generate_id
from .document_store import LocalDocumentStore


TEST_PRODUCT_PREFIX = "test_product"
TEST_SALE_PREFIX = "test_sale"


def check_offline_storage() -> dict:
    """Create, read back and list a test product."""
    store = LocalDocumentStore("product")
    product = {
        "_id": generate_id(TEST_PRODUCT_PREFIX),
        "type": "product",
        "name": "Test Coffee",
        "price": 2.50,
        "stock_quantity": 100,
    }
    add_timestamps(product)

    try:
        rev = store.put(product)
        retrieved = store.get(product["_id"])
        listed = store.with_prefix(f"{TEST_PRODUCT_PREFIX}_")
    except OfflineStoreError as exc:
        current_app.logger.error("Offline storage self-test failed: %s", exc)
        return {"ok": False, "error": str(exc)}

    ok = retrieved["_rev"] == rev and retrieved["name"] == product["name"]
    return {"ok": ok, "id": product["_id"], "rev": rev, "count": len(listed)}


def check_offline_sales() -> dict:
    """Store a pending test sale and list test sales."""
    store = LocalDocumentStore("sale")
    sale = {
        "_id": generate_id(TEST_SALE_PREFIX),
        "type": "sale",
        "items": [
            {
                "product_id": "test_product_001",
                "name": "Test Coffee",
                "quantity": 2,
                "price": 2.50,
                "total": 5.00,
            }
        ],
        "total_amount": 5.00,
        "cashier_id": "test_cashier",
        "sync_status": "pending",
    }
    add_timestamps(sale)

    try:
        rev = store.put(sale)
        listed = store.with_prefix(f"{TEST_SALE_PREFIX}_")
    except OfflineStoreError as exc:
        current_app.logger.error("Offline sales self-test failed: %s", exc)
        return {"ok": False, "error": str(exc)}

    return {"ok": True, "id": sale["_id"], "rev": rev, "count": len(listed)}


def clear_test_data(stores: dict[str, LocalDocumentStore] | None = None) -> dict:
    """Remove every document carrying a test id prefix. Documents that fail to delete are logged and left."""
    stores = stores or {}
    removed = {}
    for entity_type, prefix in (("product", TEST_PRODUCT_PREFIX), ("sale", TEST_SALE_PREFIX)):
        store = stores.get(entity_type) or LocalDocumentStore(entity_type)
        count = 0
        for doc in store.with_prefix(f"{prefix}_"):
            try:
                store.remove(doc)
                count += 1
            except OfflineStoreError as exc:
                current_app.logger.warning("Test data cleanup skipped %s/%s: %s", entity_type, doc["_id"], exc)
        removed[entity_type] = count
    return removed
