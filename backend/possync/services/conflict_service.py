# Overview: Conflict resolution for local documents holding diverging revisions.

"""
Conflict Service

STRATEGIES:
- latest: the revision with the greatest updated_at (fallback created_at) wins;
  ties go to the greater revision string so the outcome never depends on order
- merge: keep the current revision, but take quantity / stock_quantity from the
  most recently updated revision
- manual: write nothing, hand every revision back to the caller

The winning body is written over the current revision in one transaction that
also drops the stored conflicting revisions.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..validation import ValidationError
from .conventions_service import document_time
from .document_store import LocalDocumentStore
from possync.time_utils import iso_now


STRATEGY_LATEST = "latest"
STRATEGY_MERGE = "merge"
STRATEGY_MANUAL = "manual"
STRATEGIES = (STRATEGY_LATEST, STRATEGY_MERGE, STRATEGY_MANUAL)

# Inventory counters: a merge takes the newest value instead of keeping the current one
LATEST_WINS_FIELDS = ("quantity", "stock_quantity")


def _recency_key(doc: dict):
    return (document_time(doc) or datetime.min, doc.get("_rev") or "")


def pick_latest(revisions: list[dict]) -> dict:
    """Deterministic winner by recency, then revision string."""
    if not revisions:
        raise ValueError("No revisions to choose from")
    return max(revisions, key=_recency_key)


def merge_documents(current: dict, conflicts: list[dict]) -> dict:
    """Start from the current revision; inventory counters follow the newest revision."""
    merged = dict(current)
    merged_time = document_time(merged) or datetime.min

    for conflict in sorted(conflicts, key=_recency_key):
        conflict_time = document_time(conflict) or datetime.min
        if conflict_time <= merged_time:
            continue
        for field in LATEST_WINS_FIELDS:
            if isinstance(conflict.get(field), (int, float)) and isinstance(merged.get(field), (int, float)):
                merged[field] = conflict[field]
        merged_time = conflict_time

    return merged


def resolve_conflicts(store: LocalDocumentStore, doc_id: str, strategy: str = STRATEGY_LATEST):
    """
    Resolve the conflicting revisions of one document.

    Returns the current document when there is nothing to resolve, the written
    winner (with its new _rev) for latest/merge, or a manual-resolution dict.
    Raises NotFoundError / ValidationError / StoreError.
    """
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown conflict resolution strategy: {strategy}")

    current = store.get(doc_id)
    conflicts = store.get_conflicts(doc_id)

    if not conflicts:
        return current

    current_app.logger.info(
        "Resolving %d conflicting revision(s) for %s/%s with strategy %s",
        len(conflicts), store.entity_type, doc_id, strategy,
    )

    if strategy == STRATEGY_MANUAL:
        return {
            "winner": current,
            "conflicts": conflicts,
            "needs_manual_resolution": True,
        }

    if strategy == STRATEGY_LATEST:
        winner = pick_latest([current, *conflicts])
    else:
        winner = merge_documents(current, conflicts)

    resolved = {
        **winner,
        "_id": doc_id,
        "id": doc_id,
        "_rev": current["_rev"],
        "conflict_resolved_at": iso_now(),
    }
    resolved["_rev"] = store.put(resolved, discard_conflicts=True)

    current_app.logger.info("Conflict resolved for %s/%s", store.entity_type, doc_id)
    return resolved
