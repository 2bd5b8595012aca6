# Overview: Reconciliation with the server of record; pushes dirty documents and pulls server changes.

"""
Reconciliation Service

PUSH:
- sales: every sale whose sync_status is pending or failed, oldest first. The
  sale id is the idempotency key on the server. An acknowledged sale is marked
  synced (mark-and-keep); a rejected one is marked failed with the reason.
- categories / products: every document whose revision was never acknowledged,
  tombstones included. Acknowledged revisions are recorded with mark_synced.

PULL: server documents changed since the stored cursor are written locally.
A document with local changes that were not pushed yet is not overwritten: the
server revision is kept as a conflicting revision for the conflict service.

TRANSPORT FAILURES: when the server cannot be reached the batch is reported as
failed and no sync_status changes. Those documents go out with the next push.
"""

from __future__ import annotations

import abc

import httpx
from flask import current_app

from ..extensions import db
from ..models import SyncCheckpoint, SyncEvent, SyncEventStatus
from ..validation import NotFoundError, OfflineStoreError
from .document_store import COLLECTION_NAMES, ENTITY_TYPES, LocalDocumentStore
from .sales_repository import SYNC_FAILED, SYNC_PENDING, SYNC_SYNCED, SalesRepository
from possync.time_utils import iso_now, utcnow


class RemoteUnavailableError(Exception):
    """The server of record could not be reached or answered garbage."""


# =============================================================================
# Gateways
# =============================================================================

class RemoteGateway(abc.ABC):
    """
    Server-of-record interface.

    push() answers {"accepted": [doc ids], "rejected": [{"id", "error"}]}.
    fetch_changes() answers {"docs": [documents], "last_seq": <cursor>}.
    """

    @abc.abstractmethod
    def push(self, entity_type: str, documents: list[dict]) -> dict:
        ...

    @abc.abstractmethod
    def fetch_changes(self, entity_type: str, since: str | None) -> dict:
        ...

    def ping(self) -> bool:
        return True


class HttpRemoteGateway(RemoteGateway):
    """JSON-over-HTTP gateway to the central server."""

    def __init__(self, base_url: str, *, token: str | None = None, timeout: float = 30.0, client: httpx.Client | None = None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise RemoteUnavailableError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteUnavailableError(f"{method} {path} returned invalid JSON") from exc

    def push(self, entity_type: str, documents: list[dict]) -> dict:
        collection = COLLECTION_NAMES[entity_type]
        payload = self._request("POST", f"/api/sync/{collection}/push", json={"docs": documents})
        return {
            "accepted": list(payload.get("accepted") or []),
            "rejected": list(payload.get("rejected") or []),
        }

    def fetch_changes(self, entity_type: str, since: str | None) -> dict:
        collection = COLLECTION_NAMES[entity_type]
        params = {"since": since} if since is not None else {}
        payload = self._request("GET", f"/api/sync/{collection}/changes", params=params)
        return {
            "docs": list(payload.get("docs") or []),
            "last_seq": payload.get("last_seq", since),
        }

    def ping(self) -> bool:
        try:
            response = self.client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == 200


# =============================================================================
# Reconciler
# =============================================================================

def _outgoing(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if k != "_seq"}


def _server_copy(entity_type: str, doc: dict) -> dict:
    """A server document as stored locally. Sales from the server are synced by definition."""
    if entity_type != "sale":
        return doc
    copy = {k: v for k, v in doc.items() if k != "sync_error"}
    copy["sync_status"] = SYNC_SYNCED
    copy["synced_at"] = doc.get("synced_at") or iso_now()
    return copy


class Reconciler:
    def __init__(
        self,
        gateway: RemoteGateway | None,
        stores: dict[str, LocalDocumentStore] | None = None,
        *,
        batch_size: int | None = None,
    ):
        self.gateway = gateway
        self.stores = stores or {entity_type: LocalDocumentStore(entity_type) for entity_type in ENTITY_TYPES}
        self.batch_size = batch_size or int(current_app.config.get("SYNC_PUSH_BATCH_SIZE", 50))
        self.sales = SalesRepository(self.stores["sale"])
        self._events: list[SyncEvent] = []

    @property
    def online(self) -> bool:
        return self.gateway is not None

    # -------------------------------------------------------------------------
    # bookkeeping
    # -------------------------------------------------------------------------

    def _checkpoint(self, entity_type: str) -> SyncCheckpoint:
        cp = db.session.get(SyncCheckpoint, entity_type)
        if cp is None:
            cp = SyncCheckpoint(entity_type=entity_type, pushed_seq=0)
            db.session.add(cp)
        return cp

    def _record(self, entity_type: str, doc_id: str | None, direction: str, status: str, *, rev=None, error=None) -> None:
        self._events.append(SyncEvent(
            entity_type=entity_type,
            doc_id=doc_id,
            direction=direction,
            status=status,
            rev=rev,
            last_error=error,
        ))

    def _commit(self) -> None:
        """Persist queued sync events. Store writes commit on their own, so events wait until the end."""
        db.session.add_all(self._events)
        self._events = []
        db.session.commit()

    # -------------------------------------------------------------------------
    # push
    # -------------------------------------------------------------------------

    def _pending_documents(self, entity_type: str, attempted: set[str]) -> list[dict]:
        """Next batch of dirty documents not yet sent in this push; pending sales go before failed ones."""
        store = self.stores[entity_type]
        if entity_type != "sale":
            return store.unsynced(limit=self.batch_size, exclude=attempted)
        batch = []
        for status in (SYNC_PENDING, SYNC_FAILED):
            docs = store.query(
                selector={"type": "sale", "sync_status": status},
                sort=[{"created_at": "asc"}],
            )
            batch.extend(doc for doc in docs if doc["_id"] not in attempted)
            if len(batch) >= self.batch_size:
                break
        return batch[:self.batch_size]

    def push_pending(self, entity_type: str) -> dict:
        """
        Push dirty documents of one entity type. Returns {"synced": [ids], "failed": [ids]}.

        Batches of SYNC_PUSH_BATCH_SIZE go out until every dirty document was
        sent once, so documents the server keeps rejecting never hold back the
        rest. A transport failure stops the run.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

        result = {"synced": [], "failed": []}
        if not self.online:
            current_app.logger.info("Push skipped for %s: no remote configured", entity_type)
            return result

        attempted: set[str] = set()
        answered = False
        pushed_seq = 0
        while True:
            docs = self._pending_documents(entity_type, attempted)
            if not docs:
                break
            attempted.update(doc["_id"] for doc in docs)
            batch_seq = self._push_batch(entity_type, docs, result)
            if batch_seq is None:
                break
            answered = True
            pushed_seq = max(pushed_seq, batch_seq)

        if not answered:
            return result

        cp = self._checkpoint(entity_type)
        cp.pushed_seq = max(cp.pushed_seq or 0, pushed_seq)
        cp.last_push_at = utcnow()
        self._commit()

        current_app.logger.info(
            "Pushed %s: %d synced, %d failed", entity_type, len(result["synced"]), len(result["failed"])
        )
        return result

    def _push_batch(self, entity_type: str, docs: list[dict], result: dict) -> int | None:
        """Send one batch and record the answer. Returns the highest acknowledged seq, None on transport failure."""
        sent_revs = {doc["_id"]: doc["_rev"] for doc in docs}
        sent_seqs = {doc["_id"]: doc.get("_seq", 0) for doc in docs}

        try:
            answer = self.gateway.push(entity_type, [_outgoing(doc) for doc in docs])
        except RemoteUnavailableError as exc:
            current_app.logger.warning("Push of %d %s document(s) failed: %s", len(docs), entity_type, exc)
            for doc_id, rev in sent_revs.items():
                self._record(entity_type, doc_id, "PUSH", SyncEventStatus.ERROR, rev=rev, error=str(exc))
            self._commit()
            result["failed"].extend(sent_revs)
            return None

        accepted = [doc_id for doc_id in answer["accepted"] if doc_id in sent_revs]
        rejected = {
            item.get("id"): item.get("error") or "Rejected by server"
            for item in answer["rejected"]
            if item.get("id") in sent_revs
        }

        store = self.stores[entity_type]
        pushed_seq = 0

        for doc_id in accepted:
            if entity_type == "sale":
                synced = self._acknowledge_sale(doc_id, sent_revs[doc_id])
            else:
                synced = store.mark_synced(doc_id, sent_revs[doc_id])
                if synced:
                    pushed_seq = max(pushed_seq, sent_seqs[doc_id])
            if synced:
                result["synced"].append(doc_id)
                self._record(entity_type, doc_id, "PUSH", SyncEventStatus.APPLIED, rev=sent_revs[doc_id])
            else:
                # Changed locally while in flight; the newer revision goes out next time
                self._record(entity_type, doc_id, "PUSH", SyncEventStatus.SENT, rev=sent_revs[doc_id])

        for doc_id, error in rejected.items():
            if entity_type == "sale":
                self.sales.mark_as_failed([doc_id], error)
            result["failed"].append(doc_id)
            self._record(entity_type, doc_id, "PUSH", SyncEventStatus.ERROR, rev=sent_revs[doc_id], error=error)

        unanswered = [doc_id for doc_id in sent_revs if doc_id not in accepted and doc_id not in rejected]
        for doc_id in unanswered:
            result["failed"].append(doc_id)
            self._record(entity_type, doc_id, "PUSH", SyncEventStatus.ERROR, rev=sent_revs[doc_id], error="No answer from server")

        return pushed_seq

    def _acknowledge_sale(self, sale_id: str, sent_rev: str) -> bool:
        try:
            current = self.stores["sale"].get(sale_id)
        except NotFoundError:
            # Deleted locally after it was sent; the server copy is authoritative now
            return True
        if current.get("sync_status") == SYNC_SYNCED:
            return True
        if current["_rev"] != sent_rev:
            return False
        outcome = self.sales.mark_as_synced([sale_id])
        if outcome["updated"] != 1:
            return False
        store = self.stores["sale"]
        store.mark_synced(sale_id, store.get(sale_id)["_rev"])
        return True

    # -------------------------------------------------------------------------
    # pull
    # -------------------------------------------------------------------------

    def _apply_remote(self, entity_type: str, doc: dict) -> str:
        """Write one server document locally. Returns "applied", "conflict" or "skipped"."""
        store = self.stores[entity_type]
        doc_id = doc.get("_id") or doc.get("id")
        if not doc_id:
            return "skipped"

        state = store.sync_state(doc_id)
        if state is not None and entity_type == "sale" and not state["deleted"]:
            # Sales track dirtiness through sync_status
            state["dirty"] = store.get(doc_id).get("sync_status") != SYNC_SYNCED

        if state is not None and state["dirty"]:
            if state["deleted"]:
                # Local deletion not pushed yet; it wins and goes out next push
                return "skipped"
            store.add_conflict(doc_id, _server_copy(entity_type, doc))
            return "conflict"

        if doc.get("_deleted"):
            if state is None or state["deleted"]:
                return "skipped"
            rev = store.remove({"_id": doc_id, "_rev": state["rev"]})
            store.mark_synced(doc_id, rev)
            return "applied"

        incoming = {k: v for k, v in _server_copy(entity_type, doc).items() if k not in ("_rev", "_deleted")}
        incoming["_id"] = doc_id
        if state is not None:
            incoming["_rev"] = state["rev"]

        rev = store.put(incoming)
        store.mark_synced(doc_id, rev)
        return "applied"

    def pull_updates(self, entity_type: str) -> dict:
        """Fetch server changes since the stored cursor. Returns {"applied", "conflicts", "failed"}."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

        result = {"applied": [], "conflicts": [], "failed": []}
        if not self.online:
            current_app.logger.info("Pull skipped for %s: no remote configured", entity_type)
            return result

        since = self._checkpoint(entity_type).pulled_since
        try:
            answer = self.gateway.fetch_changes(entity_type, since)
        except RemoteUnavailableError as exc:
            current_app.logger.warning("Pull of %s failed: %s", entity_type, exc)
            self._record(entity_type, None, "PULL", SyncEventStatus.ERROR, error=str(exc))
            self._commit()
            return result

        for doc in answer["docs"]:
            doc_id = doc.get("_id") or doc.get("id")
            try:
                outcome = self._apply_remote(entity_type, doc)
            except OfflineStoreError as exc:
                result["failed"].append(doc_id)
                self._record(entity_type, doc_id, "PULL", SyncEventStatus.ERROR, error=str(exc))
                continue
            if outcome == "applied":
                result["applied"].append(doc_id)
                self._record(entity_type, doc_id, "PULL", SyncEventStatus.APPLIED)
            elif outcome == "conflict":
                result["conflicts"].append(doc_id)
                self._record(entity_type, doc_id, "PULL", SyncEventStatus.PENDING, error="Conflicting local changes")

        cp = self._checkpoint(entity_type)
        if not result["failed"]:
            cp.pulled_since = None if answer["last_seq"] is None else str(answer["last_seq"])
        cp.last_pull_at = utcnow()
        self._commit()

        if result["conflicts"]:
            current_app.logger.warning(
                "Pulled %s with %d conflicting document(s): %s",
                entity_type, len(result["conflicts"]), ", ".join(result["conflicts"]),
            )
        return result

    # -------------------------------------------------------------------------
    # whole device
    # -------------------------------------------------------------------------

    def sync_all(self) -> dict:
        summary = {"online": self.online, "results": {}}
        if not self.online:
            return summary
        for entity_type in ENTITY_TYPES:
            summary["results"][entity_type] = {
                "push": self.push_pending(entity_type),
                "pull": self.pull_updates(entity_type),
            }
        return summary

    def pending_counts(self) -> dict:
        counts = {}
        for entity_type, store in self.stores.items():
            if entity_type == "sale":
                counts[entity_type] = store.count({"type": "sale", "sync_status": {"$in": [SYNC_PENDING, SYNC_FAILED]}})
            else:
                counts[entity_type] = len(store.unsynced())
        return counts

    def get_sync_status(self) -> dict:
        checkpoints = {
            cp.entity_type: cp.to_dict()
            for cp in db.session.query(SyncCheckpoint).order_by(SyncCheckpoint.entity_type).all()
        }
        return {
            "online": bool(self.gateway is not None and self.gateway.ping()),
            "remote_configured": self.online,
            "databases": [store.name for store in self.stores.values()],
            "pending_counts": self.pending_counts(),
            "checkpoints": checkpoints,
        }


def build_gateway() -> RemoteGateway | None:
    url = current_app.config.get("REMOTE_SYNC_URL")
    if not url:
        return None
    return HttpRemoteGateway(
        url,
        token=current_app.config.get("REMOTE_SYNC_TOKEN"),
        timeout=float(current_app.config.get("REMOTE_SYNC_TIMEOUT", 30)),
    )


def get_reconciler(gateway: RemoteGateway | None = None) -> Reconciler:
    return Reconciler(gateway if gateway is not None else build_gateway())
