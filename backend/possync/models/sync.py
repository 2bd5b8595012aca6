from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z


class SyncEventStatus:
    PENDING = "PENDING"
    SENT = "SENT"
    APPLIED = "APPLIED"
    ERROR = "ERROR"


class SyncCheckpoint(db.Model):
    """
    Reconciliation progress per entity type.

    - pushed_seq: highest local update sequence included in an acknowledged push
    - pulled_since: opaque server cursor returned by the last pull
    """
    __tablename__ = "sync_checkpoints"

    entity_type = db.Column(db.String(32), primary_key=True)
    pushed_seq = db.Column(db.Integer, nullable=False, default=0)
    pulled_since = db.Column(db.String(64), nullable=True)

    last_push_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_pull_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "pushed_seq": self.pushed_seq,
            "pulled_since": self.pulled_since,
            "last_push_at": to_utc_z(self.last_push_at),
            "last_pull_at": to_utc_z(self.last_pull_at),
        }


class SyncEvent(db.Model):
    """
    Audit trail of reconciliation attempts.

    One row per document per push/pull attempt, so a failed sale can be traced
    back to the error the server returned.
    """
    __tablename__ = "sync_events"
    __table_args__ = (
        db.Index("ix_sync_events_entity_doc", "entity_type", "doc_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False, index=True)
    doc_id = db.Column(db.String(128), nullable=True)
    direction = db.Column(db.String(8), nullable=False)  # PUSH / PULL
    status = db.Column(db.String(20), nullable=False, default=SyncEventStatus.PENDING, index=True)
    rev = db.Column(db.String(64), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "doc_id": self.doc_id,
            "direction": self.direction,
            "status": self.status,
            "rev": self.rev,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
        }
