# Overview: Housekeeping for the local store; purges old documents.

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..validation import OfflineStoreError
from .document_store import LocalDocumentStore
from .sales_repository import SYNC_SYNCED
from possync.time_utils import to_utc_z, utcnow


def cleanup(entity_type: str, *, older_than_days: int | None = None) -> int:
    """
    Tombstone documents created more than older_than_days ago.

    Sales are only purged once synced; pending and failed sales are never lost.
    Returns the number of documents removed.
    """
    if older_than_days is None:
        older_than_days = int(current_app.config.get("CLEANUP_RETENTION_DAYS", 30))

    store = LocalDocumentStore(entity_type)
    cutoff = to_utc_z(utcnow() - timedelta(days=older_than_days))

    selector = {"created_at": {"$lt": cutoff}}
    if entity_type == "sale":
        selector["sync_status"] = SYNC_SYNCED

    removed = 0
    for doc in store.query(selector=selector):
        try:
            store.remove(doc)
            removed += 1
        except OfflineStoreError as exc:
            current_app.logger.warning("Cleanup skipped %s/%s: %s", entity_type, doc["_id"], exc)

    if removed:
        current_app.logger.info("Cleaned up %d old document(s) from %s", removed, store.name)
    return removed
