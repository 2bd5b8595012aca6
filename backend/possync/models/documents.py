from __future__ import annotations

import copy

from ..extensions import db
from possync.time_utils import to_utc_z


class LocalDocument(db.Model):
    """
    One revision-tracked document in the device's local store.

    ENTITY TYPES: entity_type partitions the table into logical collections
    (category, product, sale). doc_id is only unique within its entity type.

    REVISIONS:
    - rev is the opaque token handed to callers ("<generation>-<md5>")
    - version_id is SQLAlchemy's version counter; a concurrent flush against the
      same row raises StaleDataError, which the store reports as a conflict

    TOMBSTONES: deleted documents keep their row with is_deleted=True so the
    deletion can be replicated upstream. A tombstoned id may be created again.
    """
    __tablename__ = "local_documents"
    __table_args__ = (
        db.Index("ix_local_documents_type_seq", "entity_type", "seq"),
        db.Index("ix_local_documents_type_deleted", "entity_type", "is_deleted"),
        db.Index("ix_local_documents_type_updated", "entity_type", "updated_at"),
    )

    entity_type = db.Column(db.String(32), primary_key=True)
    doc_id = db.Column(db.String(128), primary_key=True)

    rev = db.Column(db.String(64), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    # Per-entity update sequence, feeds the changes listing
    seq = db.Column(db.Integer, nullable=False, index=True)

    body = db.Column(db.JSON, nullable=False, default=dict)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    # Last revision acknowledged by (or pulled from) the server of record.
    # rev != synced_rev means the document still has to be pushed.
    synced_rev = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<LocalDocument {self.entity_type}/{self.doc_id} rev={self.rev!r} deleted={self.is_deleted}>"

    def to_document(self) -> dict:
        doc = copy.deepcopy(self.body or {})
        doc["_id"] = self.doc_id
        doc["id"] = self.doc_id
        doc["_rev"] = self.rev
        doc["type"] = self.entity_type
        if self.is_deleted:
            doc["_deleted"] = True
        return doc


class DocumentConflict(db.Model):
    """
    A conflicting revision of a local document.

    Produced when a pulled server revision diverges from a document that was
    modified locally and not yet pushed. Resolved (and deleted) by the
    conflict service.
    """
    __tablename__ = "document_conflicts"
    __table_args__ = (
        db.UniqueConstraint("entity_type", "doc_id", "rev", name="uq_document_conflicts_rev"),
        db.Index("ix_document_conflicts_doc", "entity_type", "doc_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    doc_id = db.Column(db.String(128), nullable=False)
    rev = db.Column(db.String(64), nullable=False)
    body = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_document(self) -> dict:
        doc = copy.deepcopy(self.body or {})
        doc["_id"] = self.doc_id
        doc["id"] = self.doc_id
        doc["_rev"] = self.rev
        doc["type"] = self.entity_type
        return doc

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "doc_id": self.doc_id,
            "rev": self.rev,
            "updated_at": to_utc_z(self.updated_at),
            "recorded_at": to_utc_z(self.recorded_at),
        }


class UpdateSequence(db.Model):
    """
    Atomic per-entity update sequence.

    WHY: the changes feed and the push checkpoint both need a strictly
    increasing write counter per collection.
    """
    __tablename__ = "update_sequences"

    entity_type = db.Column(db.String(32), primary_key=True)
    last_seq = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "last_seq": self.last_seq,
            "updated_at": to_utc_z(self.updated_at),
        }
