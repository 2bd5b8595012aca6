# Overview: Local document store; revision-checked put/get/query/remove over one entity collection.

"""
Local Document Store

One LocalDocumentStore per entity type. Every instance shares the same
SQLAlchemy session and table; entity_type is the namespace.

OPTIMISTIC CONCURRENCY:
- put() on an existing document must carry the stored _rev, otherwise ConflictError
- put() without _rev on a live document is a conflict (id already taken)
- remove() follows the same rule and leaves a tombstone behind

ERRORS: NotFoundError, ConflictError and StoreError are raised to the caller.
The offline repositories turn them into result dicts.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Iterable

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import LocalDocument, DocumentConflict, UpdateSequence
from ..validation import (
    ConflictError,
    NotFoundError,
    OfflineStoreError,
    StoreError,
    ValidationError,
)
from .concurrency import run_with_retry
from possync.time_utils import iso_now, parse_iso_datetime


ENTITY_TYPES = ("category", "product", "sale")

COLLECTION_NAMES = {
    "category": "categories",
    "product": "products",
    "sale": "sales",
}

ENVELOPE_KEYS = {"_id", "id", "_rev", "type", "_deleted", "_conflicts"}

# End of an id range, as in "sale_" .. "sale_" + HIGH_KEY
HIGH_KEY = "\ufff0"


def _strip_envelope(document: dict) -> dict:
    return {k: v for k, v in document.items() if k not in ENVELOPE_KEYS}


def _next_rev(previous: str | None, body: dict, deleted: bool) -> str:
    generation = 1
    if previous:
        try:
            generation = int(previous.split("-", 1)[0]) + 1
        except ValueError:
            generation = 1
    digest = hashlib.md5()
    digest.update((previous or "").encode("utf-8"))
    digest.update(b"\x00deleted" if deleted else b"\x00")
    digest.update(json.dumps(body, sort_keys=True, default=str).encode("utf-8"))
    return f"{generation}-{digest.hexdigest()}"


def _parse_stamp(value: Any):
    if not isinstance(value, str):
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        return None


# =============================================================================
# Selector matching (Mango-style subset)
# =============================================================================

_MISSING = object()


def _resolve_field(doc: dict, path: str):
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _compare(op: str, value: Any, operand: Any) -> bool:
    if value is _MISSING:
        if op == "$exists":
            return operand is False
        if op in ("$ne", "$nin"):
            return True
        return False

    try:
        if op == "$eq":
            return value == operand
        if op == "$ne":
            return value != operand
        if op == "$gt":
            return value is not None and value > operand
        if op == "$gte":
            return value is not None and value >= operand
        if op == "$lt":
            return value is not None and value < operand
        if op == "$lte":
            return value is not None and value <= operand
    except TypeError:
        # Mismatched types never match, mirroring JSON collation
        return False

    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if op == "$exists":
        return operand is True
    if op == "$regex":
        return isinstance(value, str) and re.search(operand, value) is not None

    raise ValidationError(f"Unsupported selector operator: {op}")


def matches_selector(doc: dict, selector: dict | None) -> bool:
    """Evaluate a Mango-style selector against one document."""
    if not selector:
        return True

    for key, condition in selector.items():
        if key == "$and":
            if not all(matches_selector(doc, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches_selector(doc, sub) for sub in condition):
                return False
            continue
        if key == "$not":
            if matches_selector(doc, condition):
                return False
            continue

        value = _resolve_field(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if not _compare(op, value, operand):
                    return False
        elif not _compare("$eq", value, condition):
            return False

    return True


def _collation_key(value: Any):
    # null < booleans < numbers < strings < arrays < objects
    if value is None or value is _MISSING:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, list):
        return (4, json.dumps(value, sort_keys=True, default=str))
    return (5, json.dumps(value, sort_keys=True, default=str))


def _normalize_sort(sort: Iterable | None) -> list[tuple[str, bool]]:
    """[{"name": "asc"}, "price", ("created_at", "desc")] -> [(field, descending)]"""
    fields: list[tuple[str, bool]] = []
    for item in sort or []:
        if isinstance(item, str):
            fields.append((item, False))
        elif isinstance(item, dict):
            for field, direction in item.items():
                fields.append((field, str(direction).lower() == "desc"))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            fields.append((item[0], str(item[1]).lower() == "desc"))
        else:
            raise ValidationError(f"Invalid sort specification: {item!r}")
    return fields


def sort_documents(docs: list[dict], sort: Iterable | None) -> list[dict]:
    ordered = list(docs)
    # Stable sorts applied from the least significant field
    for field, descending in reversed(_normalize_sort(sort)):
        ordered.sort(key=lambda d: _collation_key(_resolve_field(d, field)), reverse=descending)
    return ordered


# =============================================================================
# Store
# =============================================================================

class LocalDocumentStore:
    """Revision-checked document collection for a single entity type."""

    def __init__(self, entity_type: str):
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        self.entity_type = entity_type

    def __repr__(self) -> str:
        return f"<LocalDocumentStore {self.entity_type}>"

    @property
    def name(self) -> str:
        prefix = current_app.config.get("LOCAL_DB_PREFIX", "agroplus")
        return f"{prefix}_{COLLECTION_NAMES[self.entity_type]}"

    # -------------------------------------------------------------------------
    # internals
    # -------------------------------------------------------------------------

    def _row(self, doc_id: str) -> LocalDocument | None:
        return db.session.get(LocalDocument, (self.entity_type, doc_id))

    def _next_seq(self) -> int:
        """
        Atomically allocate the next update sequence for this collection.

        Must run before the document row is touched: the flush here would
        otherwise push a half-built row.
        """
        stmt = (
            update(UpdateSequence)
            .where(UpdateSequence.entity_type == self.entity_type)
            .values(last_seq=UpdateSequence.last_seq + 1)
        )

        result = db.session.execute(stmt)
        if not result.rowcount:
            db.session.add(UpdateSequence(entity_type=self.entity_type, last_seq=1))
            db.session.flush()
            return 1

        db.session.flush()
        return (
            db.session.query(UpdateSequence.last_seq)
            .filter_by(entity_type=self.entity_type)
            .scalar()
        )

    def _write(self, op):
        """Run a write unit of work, translating storage failures into store errors."""
        try:
            return run_with_retry(op)
        except OfflineStoreError:
            db.session.rollback()
            raise
        except StaleDataError as exc:
            db.session.rollback()
            raise ConflictError("Document update conflict") from exc
        except IntegrityError as exc:
            db.session.rollback()
            raise ConflictError("Document update conflict") from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Local store write failed for %s", self.entity_type)
            raise StoreError(f"Local store write failed: {exc.__class__.__name__}") from exc

    def _read(self, op):
        try:
            return op()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Local store read failed for %s", self.entity_type)
            raise StoreError(f"Local store read failed: {exc.__class__.__name__}") from exc

    def _apply(self, row: LocalDocument, body: dict, *, deleted: bool, seq: int) -> str:
        new_rev = _next_rev(row.rev, body, deleted)
        row.rev = new_rev
        row.body = body
        row.is_deleted = deleted
        row.seq = seq
        row.created_at = _parse_stamp(body.get("created_at")) or row.created_at
        row.updated_at = _parse_stamp(body.get("updated_at")) or row.updated_at
        return new_rev

    # -------------------------------------------------------------------------
    # document operations
    # -------------------------------------------------------------------------

    def put(self, document: dict, *, discard_conflicts: bool = False) -> str:
        """
        Insert or update a document. Returns the new revision.

        A new id (or a tombstoned one) is created without _rev. An existing
        document requires the current _rev.
        """
        doc_id = document.get("_id") or document.get("id")
        if not doc_id:
            raise ValidationError("Document id is required")
        if document.get("_deleted"):
            return self.remove(document)

        incoming_rev = document.get("_rev")
        body = _strip_envelope(document)

        def _op() -> str:
            row = self._row(doc_id)

            if row is not None and not row.is_deleted:
                if incoming_rev is None:
                    raise ConflictError("Document update conflict", doc_id=doc_id, current_rev=row.rev)
                if incoming_rev != row.rev:
                    raise ConflictError("Document update conflict", doc_id=doc_id, current_rev=row.rev)
            elif row is not None and incoming_rev not in (None, row.rev):
                raise ConflictError("Document update conflict", doc_id=doc_id, current_rev=row.rev)

            seq = self._next_seq()

            if row is None:
                row = LocalDocument(entity_type=self.entity_type, doc_id=doc_id, rev="")
                db.session.add(row)

            new_rev = self._apply(row, body, deleted=False, seq=seq)

            if discard_conflicts:
                db.session.query(DocumentConflict).filter_by(
                    entity_type=self.entity_type, doc_id=doc_id
                ).delete()

            db.session.commit()
            return new_rev

        return self._write(_op)

    def get(self, doc_id: str) -> dict:
        """Return the live document or raise NotFoundError."""
        row = self._read(lambda: self._row(doc_id))
        if row is None or row.is_deleted:
            raise NotFoundError(self.entity_type, doc_id)
        return row.to_document()

    def remove(self, document: dict) -> str:
        """Tombstone a document at the given revision. Returns the tombstone revision."""
        doc_id = document.get("_id") or document.get("id")
        if not doc_id:
            raise ValidationError("Document id is required")
        rev = document.get("_rev")

        def _op() -> str:
            row = self._row(doc_id)
            if row is None or row.is_deleted:
                raise NotFoundError(self.entity_type, doc_id)
            if rev != row.rev:
                raise ConflictError("Document update conflict", doc_id=doc_id, current_rev=row.rev)

            seq = self._next_seq()
            tombstone = {"updated_at": iso_now()}
            if row.body and row.body.get("created_at"):
                tombstone["created_at"] = row.body["created_at"]
            new_rev = self._apply(row, tombstone, deleted=True, seq=seq)
            db.session.commit()
            return new_rev

        return self._write(_op)

    def query(
        self,
        selector: dict | None = None,
        sort: Iterable | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict]:
        """
        Return live documents matching selector, ordered by sort, paginated by skip/limit.

        Without a sort the order is by document id.
        """
        def _op():
            return (
                db.session.query(LocalDocument)
                .filter(
                    LocalDocument.entity_type == self.entity_type,
                    LocalDocument.is_deleted.is_(False),
                )
                .order_by(LocalDocument.doc_id.asc())
                .all()
            )

        rows = self._read(_op)
        docs = [row.to_document() for row in rows]
        docs = [doc for doc in docs if matches_selector(doc, selector)]
        docs = sort_documents(docs, sort)

        skip = max(int(skip or 0), 0)
        if limit is None:
            return docs[skip:]
        return docs[skip:skip + max(int(limit), 0)]

    def count(self, selector: dict | None = None) -> int:
        return len(self.query(selector))

    def all_docs(
        self,
        start_key: str | None = None,
        end_key: str | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[dict]:
        """Id-range listing in id order; end_key is inclusive."""
        def _op():
            q = db.session.query(LocalDocument).filter(LocalDocument.entity_type == self.entity_type)
            if not include_deleted:
                q = q.filter(LocalDocument.is_deleted.is_(False))
            if start_key is not None:
                q = q.filter(LocalDocument.doc_id >= start_key)
            if end_key is not None:
                q = q.filter(LocalDocument.doc_id <= end_key)
            return q.order_by(LocalDocument.doc_id.asc()).all()

        return [row.to_document() for row in self._read(_op)]

    def with_prefix(self, prefix: str) -> list[dict]:
        return self.all_docs(start_key=prefix, end_key=prefix + HIGH_KEY)

    def bulk_docs(self, documents: list[dict]) -> list[dict]:
        """
        Write documents one by one (not atomic). Documents flagged _deleted are removed.

        Returns one result per input: {"ok", "id", "rev"} or {"id", "error", "reason"}.
        """
        results = []
        for document in documents:
            doc_id = document.get("_id") or document.get("id")
            try:
                if document.get("_deleted"):
                    rev = self.remove(document)
                else:
                    rev = self.put(document)
                results.append({"ok": True, "id": doc_id, "rev": rev})
            except OfflineStoreError as exc:
                results.append({"id": doc_id, "error": exc.kind.value, "reason": str(exc)})
        return results

    # -------------------------------------------------------------------------
    # changes feed / sync bookkeeping
    # -------------------------------------------------------------------------

    def changes(self, since: int = 0, *, limit: int | None = None) -> dict:
        """Documents (tombstones included) written after update sequence `since`."""
        def _op():
            q = (
                db.session.query(LocalDocument)
                .filter(
                    LocalDocument.entity_type == self.entity_type,
                    LocalDocument.seq > since,
                )
                .order_by(LocalDocument.seq.asc())
            )
            if limit is not None:
                q = q.limit(limit)
            return q.all()

        rows = self._read(_op)
        results = [
            {
                "seq": row.seq,
                "id": row.doc_id,
                "changes": [{"rev": row.rev}],
                "deleted": bool(row.is_deleted),
                "doc": row.to_document(),
            }
            for row in rows
        ]
        last_seq = results[-1]["seq"] if results else since
        return {"results": results, "last_seq": last_seq}

    def modified_since(self, since: str | None) -> list[dict]:
        """Live documents whose updated_at is at or after `since` (ISO-8601)."""
        cutoff = _parse_stamp(since)

        def _op():
            q = db.session.query(LocalDocument).filter(
                LocalDocument.entity_type == self.entity_type,
                LocalDocument.is_deleted.is_(False),
            )
            if cutoff is not None:
                q = q.filter(LocalDocument.updated_at >= cutoff)
            return q.order_by(LocalDocument.updated_at.asc(), LocalDocument.doc_id.asc()).all()

        return [row.to_document() for row in self._read(_op)]

    def unsynced(self, *, limit: int | None = None, exclude: Iterable[str] | None = None) -> list[dict]:
        """Documents (tombstones included) whose revision was never acknowledged upstream."""
        excluded = list(exclude or [])

        def _op():
            q = db.session.query(LocalDocument).filter(
                LocalDocument.entity_type == self.entity_type,
                db.or_(
                    LocalDocument.synced_rev.is_(None),
                    LocalDocument.synced_rev != LocalDocument.rev,
                ),
            )
            if excluded:
                q = q.filter(LocalDocument.doc_id.notin_(excluded))
            q = q.order_by(LocalDocument.seq.asc())
            if limit is not None:
                q = q.limit(limit)
            return q.all()

        docs = []
        for row in self._read(_op):
            doc = row.to_document()
            doc["_seq"] = row.seq
            docs.append(doc)
        return docs

    def sync_state(self, doc_id: str) -> dict | None:
        """{"rev", "deleted", "dirty"} for a known id (tombstones included), else None."""
        row = self._read(lambda: self._row(doc_id))
        if row is None:
            return None
        return {
            "rev": row.rev,
            "deleted": bool(row.is_deleted),
            "dirty": row.synced_rev != row.rev,
        }

    def mark_synced(self, doc_id: str, rev: str) -> bool:
        """
        Record that `rev` matches the server. Returns False when the document
        moved on since it was sent (it stays dirty and is pushed again).
        """
        def _op() -> bool:
            row = self._row(doc_id)
            if row is None or row.rev != rev:
                return False
            row.synced_rev = rev
            db.session.commit()
            return True

        return self._write(_op)

    def current_seq(self) -> int:
        value = self._read(
            lambda: db.session.query(UpdateSequence.last_seq)
            .filter_by(entity_type=self.entity_type)
            .scalar()
        )
        return value or 0

    # -------------------------------------------------------------------------
    # conflicting revisions
    # -------------------------------------------------------------------------

    def get_conflicts(self, doc_id: str) -> list[dict]:
        def _op():
            return (
                db.session.query(DocumentConflict)
                .filter_by(entity_type=self.entity_type, doc_id=doc_id)
                .order_by(DocumentConflict.rev.asc())
                .all()
            )

        return [row.to_document() for row in self._read(_op)]

    def add_conflict(self, doc_id: str, document: dict) -> str:
        """Keep a diverging revision next to the current one. Returns its revision."""
        body = _strip_envelope(document)
        rev = document.get("_rev") or _next_rev(None, body, False)

        def _op() -> str:
            exists = (
                db.session.query(DocumentConflict.id)
                .filter_by(entity_type=self.entity_type, doc_id=doc_id, rev=rev)
                .first()
            )
            if exists is None:
                db.session.add(DocumentConflict(
                    entity_type=self.entity_type,
                    doc_id=doc_id,
                    rev=rev,
                    body=body,
                    updated_at=_parse_stamp(body.get("updated_at")),
                ))
                db.session.commit()
            return rev

        return self._write(_op)

    def drop_conflicts(self, doc_id: str, revs: Iterable[str] | None = None) -> int:
        def _op() -> int:
            q = db.session.query(DocumentConflict).filter_by(entity_type=self.entity_type, doc_id=doc_id)
            if revs is not None:
                q = q.filter(DocumentConflict.rev.in_(list(revs)))
            deleted = q.delete(synchronize_session=False)
            db.session.commit()
            return deleted

        return self._write(_op)
