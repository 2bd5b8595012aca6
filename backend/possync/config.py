# backend/possync/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Local document database, stored next to the POS device
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logical database names (one per entity type), kept for status reporting
    LOCAL_DB_PREFIX = os.environ.get("LOCAL_DB_PREFIX", "agroplus")

    # Automatic resolve-and-retry passes on a revision conflict during update
    OFFLINE_MAX_CONFLICT_RETRIES = int(os.environ.get("OFFLINE_MAX_CONFLICT_RETRIES", "1"))
    OFFLINE_DEFAULT_LIMIT = int(os.environ.get("OFFLINE_DEFAULT_LIMIT", "100"))

    # Server of record. Unset means the device works fully offline.
    REMOTE_SYNC_URL = os.environ.get("REMOTE_SYNC_URL")
    REMOTE_SYNC_TOKEN = os.environ.get("REMOTE_SYNC_TOKEN")
    REMOTE_SYNC_TIMEOUT = float(os.environ.get("REMOTE_SYNC_TIMEOUT", "30"))
    SYNC_PUSH_BATCH_SIZE = int(os.environ.get("SYNC_PUSH_BATCH_SIZE", "50"))

    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    CLEANUP_RETENTION_DAYS = int(os.environ.get("CLEANUP_RETENTION_DAYS", "30"))
