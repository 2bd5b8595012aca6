# backend/possync/routes/system.py
"""
System health endpoint.

Checks the local document store and reports how much work is waiting for the
server. The till keeps working while the server is down, so an unreachable
remote only degrades the status.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import LocalDocument, SyncCheckpoint
from ..services.document_store import ENTITY_TYPES
from ..services.reconcile_service import get_reconciler
from possync.time_utils import iso_now

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check local database connectivity and count stored documents per entity type.
    """
    start_time = time.time()
    try:
        counts = {
            entity_type: db.session.query(LocalDocument).filter_by(
                entity_type=entity_type, is_deleted=False
            ).count()
            for entity_type in ENTITY_TYPES
        }
        checkpoints = db.session.query(SyncCheckpoint).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "documents": counts,
                "checkpoints": checkpoints,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_sync_health() -> dict:
    """
    Remote reachability plus pending counts. Offline is "degraded", not "unhealthy".
    """
    start_time = time.time()
    try:
        reconciler = get_reconciler()
        pending = reconciler.pending_counts()
        reachable = reconciler.online and reconciler.gateway.ping()
        elapsed_ms = (time.time() - start_time) * 1000

        details = {
            "remote_configured": reconciler.online,
            "remote_reachable": reachable,
            "pending": pending,
        }
        if not reachable:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": "Working offline",
                "details": details,
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Sync health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Sync service error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: local store usable (healthy or degraded)
    - 503: local store unusable
    """
    start_time = time.time()

    database_health = check_database_health()
    sync_health = check_sync_health()

    all_checks = [database_health, sync_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": iso_now(),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "sync": sync_health,
        }
    }

    return response, http_status
