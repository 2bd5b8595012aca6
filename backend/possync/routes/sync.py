# Overview: Flask API routes for reconciliation with the server of record.

# backend/possync/routes/sync.py
"""
Sync routes.

Manual triggers for push / pull (the till normally runs them from the CLI or a
scheduler) and a status view with pending counts per entity type.
"""
from flask import Blueprint, current_app

from ..services.document_store import ENTITY_TYPES
from ..services.reconcile_service import get_reconciler

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _unknown_entity(entity_type: str):
    return {
        "success": False,
        "error": f"entity_type must be one of: {', '.join(ENTITY_TYPES)}",
        "error_kind": "validation",
    }, 400


@sync_bp.get("/status")
def sync_status():
    try:
        return {"success": True, "status": get_reconciler().get_sync_status()}, 200
    except Exception:
        current_app.logger.exception("Failed to read sync status")
        return {"error": "Internal server error"}, 500


@sync_bp.post("/push/<string:entity_type>")
def push(entity_type: str):
    if entity_type not in ENTITY_TYPES:
        return _unknown_entity(entity_type)
    try:
        result = get_reconciler().push_pending(entity_type)
    except Exception:
        current_app.logger.exception("Failed to push %s", entity_type)
        return {"error": "Internal server error"}, 500
    return {"success": True, **result}, 200


@sync_bp.post("/pull/<string:entity_type>")
def pull(entity_type: str):
    if entity_type not in ENTITY_TYPES:
        return _unknown_entity(entity_type)
    try:
        result = get_reconciler().pull_updates(entity_type)
    except Exception:
        current_app.logger.exception("Failed to pull %s", entity_type)
        return {"error": "Internal server error"}, 500
    return {"success": True, **result}, 200


@sync_bp.post("/run")
def run_sync():
    try:
        summary = get_reconciler().sync_all()
    except Exception:
        current_app.logger.exception("Sync run failed")
        return {"error": "Internal server error"}, 500
    return {"success": True, **summary}, 200
