# Overview: Base repository for one offline entity type; CRUD over the local store returning result dicts.

"""
Offline Entity Repository

Every public method returns a dict and never raises store errors:
- success: {"success": True, "<entity>": {...}}
- failure: {"success": False, "error": "<message>", "error_kind": "not_found" | "conflict" | ...}

UPDATE CONFLICTS: an update that hits a revision conflict goes through a small
state machine: CLEAN -> CONFLICTED -> RESOLVED -> CLEAN (retry). Once the
configured number of retries is used up, the next conflict ends in FAILED and
is returned as a conflict result.
"""

from __future__ import annotations

import enum
from typing import Callable

from flask import current_app

from ..validation import ConflictError, DocumentPolicy, OfflineStoreError, ValidationError, validate_document
from .conflict_service import STRATEGY_LATEST, resolve_conflicts
from .conventions_service import add_timestamps, generate_id
from .document_store import LocalDocumentStore
from possync.time_utils import parse_iso_datetime


# Fields a patch may never overwrite
PROTECTED_FIELDS = ("_id", "id", "_rev", "type", "created_at")


class UpdateState(str, enum.Enum):
    CLEAN = "clean"
    CONFLICTED = "conflicted"
    RESOLVED = "resolved"
    FAILED = "failed"


def failure(exc: OfflineStoreError) -> dict:
    return {"success": False, "error": str(exc), "error_kind": exc.kind.value}


class OfflineRepository:
    """Type-safe facade restricting the local store to one entity type."""

    entity_type: str = ""
    plural: str = ""
    policy = DocumentPolicy()
    default_sort: list = [{"created_at": "asc"}]

    def __init__(self, store: LocalDocumentStore | None = None, *, max_conflict_retries: int | None = None):
        self.store = store if store is not None else LocalDocumentStore(self.entity_type)
        self._max_conflict_retries = max_conflict_retries

    @property
    def max_conflict_retries(self) -> int:
        if self._max_conflict_retries is not None:
            return self._max_conflict_retries
        return int(current_app.config.get("OFFLINE_MAX_CONFLICT_RETRIES", 1))

    @property
    def default_limit(self) -> int:
        return int(current_app.config.get("OFFLINE_DEFAULT_LIMIT", 100))

    # -------------------------------------------------------------------------
    # hooks
    # -------------------------------------------------------------------------

    def prepare_create(self, cleaned: dict) -> dict:
        """Entity-specific rules applied to a validated create payload."""
        return cleaned

    def prepare_update(self, current: dict, patch: dict) -> dict:
        """Entity-specific rules applied to the merged document before it is written."""
        return current

    # -------------------------------------------------------------------------
    # shared building blocks
    # -------------------------------------------------------------------------

    def _entity_result(self, doc: dict) -> dict:
        return {"success": True, self.entity_type: doc}

    def _build_new(self, data: dict) -> dict:
        cleaned = validate_document(data, self.policy, partial=False)
        doc = self.prepare_create(cleaned)
        doc["_id"] = generate_id(self.entity_type)
        doc["type"] = self.entity_type
        add_timestamps(doc)
        return doc

    def _insert(self, doc: dict) -> dict:
        rev = self.store.put(doc)
        return {**doc, "id": doc["_id"], "_rev": rev}

    def _update_with_retry(self, doc_id: str, mutate: Callable[[dict], dict]) -> dict:
        """
        Read-modify-write with bounded resolve-and-retry on revision conflicts.

        mutate receives the freshly read document and returns the document to
        write (envelope fields are restored afterwards). Raises ConflictError
        once the retry budget is spent.
        """
        state = UpdateState.CLEAN
        retries = 0

        while True:
            if state is UpdateState.CONFLICTED:
                resolve_conflicts(self.store, doc_id, STRATEGY_LATEST)
                state = UpdateState.RESOLVED
                continue

            current = self.store.get(doc_id)
            updated = mutate(current)
            updated["_id"] = doc_id
            updated["id"] = doc_id
            updated["type"] = self.entity_type
            updated["_rev"] = current["_rev"]
            if "created_at" in current:
                updated["created_at"] = current["created_at"]
            add_timestamps(updated, is_update=True)

            try:
                updated["_rev"] = self.store.put(updated)
                return updated
            except ConflictError:
                if retries >= self.max_conflict_retries:
                    state = UpdateState.FAILED
                    current_app.logger.warning(
                        "Update of %s/%s failed after %d conflict retr%s",
                        self.entity_type, doc_id, retries, "y" if retries == 1 else "ies",
                    )
                    raise
                retries += 1
                state = UpdateState.CONFLICTED
                current_app.logger.info(
                    "Revision conflict updating %s/%s, resolving (attempt %d)",
                    self.entity_type, doc_id, retries,
                )

    def _merge_patch(self, patch: dict) -> Callable[[dict], dict]:
        def _mutate(current: dict) -> dict:
            merged = {**current, **{k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}}
            return self.prepare_update(merged, patch)
        return _mutate

    # -------------------------------------------------------------------------
    # public operations
    # -------------------------------------------------------------------------

    def create(self, data: dict) -> dict:
        try:
            doc = self._insert(self._build_new(data))
        except OfflineStoreError as exc:
            current_app.logger.warning("Error creating %s: %s", self.entity_type, exc)
            return failure(exc)
        return self._entity_result(doc)

    def find_all(self, limit: int | None = None, skip: int = 0, selector: dict | None = None, sort: list | None = None) -> dict:
        query = {"type": self.entity_type}
        if selector:
            query.update(selector)
        try:
            docs = self.store.query(
                selector=query,
                sort=sort or self.default_sort,
                limit=self.default_limit if limit is None else limit,
                skip=skip,
            )
        except OfflineStoreError as exc:
            current_app.logger.warning("Error finding %s: %s", self.plural, exc)
            return failure(exc)
        return {"success": True, self.plural: docs}

    def find_by_id(self, doc_id: str) -> dict:
        try:
            doc = self.store.get(doc_id)
        except OfflineStoreError as exc:
            return failure(exc)
        return self._entity_result(doc)

    def update(self, doc_id: str, patch: dict) -> dict:
        try:
            cleaned = validate_document(patch, self.policy, partial=True)
            doc = self._update_with_retry(doc_id, self._merge_patch(cleaned))
        except OfflineStoreError as exc:
            current_app.logger.warning("Error updating %s/%s: %s", self.entity_type, doc_id, exc)
            return failure(exc)
        return self._entity_result(doc)

    def delete(self, doc_id: str) -> dict:
        try:
            current = self.store.get(doc_id)
            rev = self.store.remove(current)
        except OfflineStoreError as exc:
            current_app.logger.warning("Error deleting %s/%s: %s", self.entity_type, doc_id, exc)
            return failure(exc)
        return {"success": True, "result": {"ok": True, "id": doc_id, "rev": rev}}

    def get_modified_since(self, since: str | None = None) -> dict:
        """Live documents updated at or after `since` (ISO-8601), oldest change first."""
        if since:
            try:
                parse_iso_datetime(since)
            except ValueError:
                return failure(ValidationError(f"Invalid timestamp: {since}"))
        try:
            docs = self.store.modified_since(since)
        except OfflineStoreError as exc:
            return failure(exc)
        return {"success": True, self.plural: docs}

    def resolve_conflict(self, doc_id: str, strategy: str = STRATEGY_LATEST) -> dict:
        try:
            result = resolve_conflicts(self.store, doc_id, strategy)
        except OfflineStoreError as exc:
            current_app.logger.warning("Error resolving conflict for %s/%s: %s", self.entity_type, doc_id, exc)
            return failure(exc)
        return {"success": True, "result": result}
