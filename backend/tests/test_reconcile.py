import httpx
import pytest

from possync.models import SyncCheckpoint, SyncEvent
from possync.services.document_store import LocalDocumentStore
from possync.services.product_repository import ProductRepository
from possync.services.reconcile_service import HttpRemoteGateway, Reconciler, RemoteUnavailableError
from possync.services.sales_repository import SalesRepository


def _record_sale(**overrides):
    payload = {"items": [{"product_id": "p1", "quantity": 1, "price": 4.0}], "cashier_id": "ana"}
    payload.update(overrides)
    return SalesRepository().create_sale(payload)["sale"]


class TestPushSales:
    def test_acknowledged_sales_are_marked_synced_once(self, db_session, gateway):
        """
        SCENARIO: two pending sales pushed, server accepts both
        EXPECTED: both marked synced; a second push sends nothing
        """
        first = _record_sale()
        second = _record_sale()
        reconciler = Reconciler(gateway)

        result = reconciler.push_pending("sale")

        assert sorted(result["synced"]) == sorted([first["id"], second["id"]])
        assert result["failed"] == []
        repo = SalesRepository()
        assert repo.find_by_id(first["id"])["sale"]["sync_status"] == "synced"
        assert repo.get_pending_sales()["sales"] == []

        again = reconciler.push_pending("sale")
        assert again == {"synced": [], "failed": []}
        assert len(gateway.received["sale"]) == 2

    def test_transport_failure_keeps_sales_pending(self, db_session, gateway):
        sale = _record_sale()
        gateway.down = True

        result = Reconciler(gateway).push_pending("sale")

        assert result == {"synced": [], "failed": [sale["id"]]}
        assert SalesRepository().find_by_id(sale["id"])["sale"]["sync_status"] == "pending"
        event = db_session.query(SyncEvent).filter_by(doc_id=sale["id"]).one()
        assert event.status == "ERROR"
        assert "connection refused" in event.last_error

    def test_rejected_sale_marked_failed_and_retried(self, db_session, gateway):
        sale = _record_sale()
        gateway.reject[sale["id"]] = "Unknown product p1"
        reconciler = Reconciler(gateway)

        result = reconciler.push_pending("sale")

        assert result["failed"] == [sale["id"]]
        stored = SalesRepository().find_by_id(sale["id"])["sale"]
        assert stored["sync_status"] == "failed"
        assert stored["sync_error"] == "Unknown product p1"

        del gateway.reject[sale["id"]]
        assert reconciler.push_pending("sale")["synced"] == [sale["id"]]

    def test_rejected_sale_does_not_hold_back_newer_ones(self, db_session, gateway):
        """
        SCENARIO: batch size 1, the oldest sale is rejected on every push
        EXPECTED: the newer sale still goes out and is synced on the first push
        """
        rejected = _record_sale()
        valid = _record_sale()
        gateway.reject[rejected["id"]] = "Unknown product p1"
        reconciler = Reconciler(gateway, batch_size=1)

        first = reconciler.push_pending("sale")

        assert first == {"synced": [valid["id"]], "failed": [rejected["id"]]}
        assert SalesRepository().find_by_id(valid["id"])["sale"]["sync_status"] == "synced"

        for _ in range(2):
            assert reconciler.push_pending("sale") == {"synced": [], "failed": [rejected["id"]]}
        assert [d["_id"] for d in gateway.received["sale"]].count(valid["id"]) == 1

    def test_pending_sales_go_before_failed_ones(self, db_session, gateway):
        failed = _record_sale()
        SalesRepository().mark_as_failed([failed["id"]], "Timeout")
        pending = _record_sale()

        Reconciler(gateway, batch_size=1).push_pending("sale")

        assert [d["_id"] for d in gateway.received["sale"]] == [pending["id"], failed["id"]]

    def test_unanswered_sale_counts_as_failed(self, db_session, gateway):
        sale = _record_sale()
        gateway.ignore.add(sale["id"])

        result = Reconciler(gateway).push_pending("sale")

        assert result["failed"] == [sale["id"]]
        assert SalesRepository().find_by_id(sale["id"])["sale"]["sync_status"] == "pending"

    def test_offline_push_is_a_noop(self, db_session):
        _record_sale()
        reconciler = Reconciler(None)

        assert reconciler.online is False
        assert reconciler.push_pending("sale") == {"synced": [], "failed": []}
        assert reconciler.sync_all() == {"online": False, "results": {}}

    def test_unknown_entity_type(self, db_session, gateway):
        with pytest.raises(ValueError):
            Reconciler(gateway).push_pending("customer")


class TestPushProducts:
    def test_products_pushed_until_acknowledged(self, db_session, gateway):
        repo = ProductRepository()
        product = repo.create({"name": "Seeds", "stock_quantity": 5})["product"]
        reconciler = Reconciler(gateway)

        assert reconciler.push_pending("product")["synced"] == [product["id"]]
        assert reconciler.pending_counts()["product"] == 0

        repo.update_stock(product["id"], 1, "subtract")
        assert reconciler.pending_counts()["product"] == 1
        assert reconciler.push_pending("product")["synced"] == [product["id"]]

        pushed = gateway.received["product"]
        assert [d["stock_quantity"] for d in pushed] == [5, 4]
        assert all("_seq" not in d for d in pushed)

        cp = db_session.get(SyncCheckpoint, "product")
        assert cp.pushed_seq == LocalDocumentStore("product").current_seq()

    def test_rejected_product_does_not_hold_back_newer_ones(self, db_session, gateway):
        repo = ProductRepository()
        rejected = repo.create({"name": "Broken"})["product"]
        valid = repo.create({"name": "Seeds"})["product"]
        gateway.reject[rejected["id"]] = "Duplicate SKU"

        result = Reconciler(gateway, batch_size=1).push_pending("product")

        assert result == {"synced": [valid["id"]], "failed": [rejected["id"]]}
        assert LocalDocumentStore("product").sync_state(valid["id"])["dirty"] is False
        assert LocalDocumentStore("product").sync_state(rejected["id"])["dirty"] is True

    def test_deletions_are_pushed(self, db_session, gateway):
        repo = ProductRepository()
        product = repo.create({"name": "Seeds"})["product"]
        reconciler = Reconciler(gateway)
        reconciler.push_pending("product")

        repo.delete(product["id"])
        reconciler.push_pending("product")

        assert gateway.received["product"][-1]["_deleted"] is True


class TestPull:
    def test_server_documents_applied_and_cursor_saved(self, db_session, gateway):
        gateway.changes["product"] = [
            {"_id": "product_srv_1", "_rev": "5-abc", "name": "Server seeds", "price": 3.0},
        ]
        reconciler = Reconciler(gateway)

        result = reconciler.pull_updates("product")

        assert result == {"applied": ["product_srv_1"], "conflicts": [], "failed": []}
        assert ProductRepository().find_by_id("product_srv_1")["product"]["name"] == "Server seeds"
        assert reconciler.pending_counts()["product"] == 0
        assert db_session.get(SyncCheckpoint, "product").pulled_since == "srv-1"

        reconciler.pull_updates("product")
        assert gateway.fetch_calls[-1] == ("product", "srv-1")

    def test_clean_local_copy_is_overwritten(self, db_session, gateway):
        product = ProductRepository().create({"name": "Seeds", "price": 1.0})["product"]
        reconciler = Reconciler(gateway)
        reconciler.push_pending("product")

        gateway.changes["product"] = [{"_id": product["id"], "_rev": "9-srv", "name": "Seeds", "price": 1.5}]
        result = reconciler.pull_updates("product")

        assert result["applied"] == [product["id"]]
        assert ProductRepository().find_by_id(product["id"])["product"]["price"] == 1.5

    def test_dirty_local_copy_becomes_conflict(self, db_session, gateway):
        """
        SCENARIO: server changed a product that was also edited locally and not pushed
        EXPECTED: local copy untouched, server revision stored as a conflict, resolvable
        """
        repo = ProductRepository()
        product = repo.create({"name": "Seeds", "stock_quantity": 10})["product"]
        reconciler = Reconciler(gateway)
        reconciler.push_pending("product")
        repo.update_stock(product["id"], 2, "subtract")

        gateway.changes["product"] = [{
            "_id": product["id"],
            "_rev": "7-srv",
            "name": "Seeds (server)",
            "stock_quantity": 20,
            "updated_at": "2999-01-01T00:00:00.000Z",
        }]
        result = reconciler.pull_updates("product")

        assert result["conflicts"] == [product["id"]]
        assert repo.find_by_id(product["id"])["product"]["stock_quantity"] == 8
        store = LocalDocumentStore("product")
        assert [c["_rev"] for c in store.get_conflicts(product["id"])] == ["7-srv"]

        resolved = repo.resolve_conflict(product["id"], "latest")
        assert resolved["success"] is True
        assert repo.find_by_id(product["id"])["product"]["name"] == "Seeds (server)"

    def test_pending_sale_not_overwritten(self, db_session, gateway):
        sale = _record_sale()
        gateway.changes["sale"] = [{"_id": sale["id"], "_rev": "3-srv", "total_amount": 99}]

        result = Reconciler(gateway).pull_updates("sale")

        assert result["conflicts"] == [sale["id"]]
        assert SalesRepository().find_by_id(sale["id"])["sale"]["total_amount"] == 4.0

    def test_resolved_sale_conflict_keeps_sync_status(self, db_session, gateway):
        """
        SCENARIO: the server copy of a pending sale wins a latest-wins resolution
        EXPECTED: the resolved sale is synced and later pulls apply cleanly
        """
        sale = _record_sale()
        server_copy = {
            "_id": sale["id"],
            "_rev": "4-srv",
            "items": [{"product_id": "p1", "quantity": 1, "price": 4.0, "total": 4.0}],
            "total_amount": 4.0,
            "cashier_id": "luis",
            "updated_at": "2999-01-01T00:00:00.000Z",
        }
        gateway.changes["sale"] = [server_copy]
        reconciler = Reconciler(gateway)

        assert reconciler.pull_updates("sale")["conflicts"] == [sale["id"]]
        repo = SalesRepository()
        assert repo.resolve_conflict(sale["id"], "latest")["success"] is True

        resolved = repo.find_by_id(sale["id"])["sale"]
        assert resolved["cashier_id"] == "luis"
        assert resolved["sync_status"] == "synced"
        assert resolved["synced_at"]
        assert [s["id"] for s in repo.find_by_sync_status("synced")["sales"]] == [sale["id"]]
        assert reconciler.pending_counts()["sale"] == 0

        gateway.changes["sale"] = [{**server_copy, "_rev": "5-srv", "cashier_id": "marta"}]
        assert reconciler.pull_updates("sale")["applied"] == [sale["id"]]
        assert repo.find_by_id(sale["id"])["sale"]["cashier_id"] == "marta"

    def test_pulled_sales_arrive_synced(self, db_session, gateway):
        gateway.changes["sale"] = [{
            "_id": "sale_other_till",
            "items": [{"product_id": "p1", "quantity": 1, "price": 2.0, "total": 2.0}],
            "total_amount": 2.0,
        }]
        reconciler = Reconciler(gateway)

        reconciler.pull_updates("sale")

        stored = SalesRepository().find_by_id("sale_other_till")["sale"]
        assert stored["sync_status"] == "synced"
        assert reconciler.push_pending("sale") == {"synced": [], "failed": []}

    def test_server_deletion_applied(self, db_session, gateway):
        product = ProductRepository().create({"name": "Seeds"})["product"]
        reconciler = Reconciler(gateway)
        reconciler.push_pending("product")

        gateway.changes["product"] = [{"_id": product["id"], "_deleted": True}]
        reconciler.pull_updates("product")

        assert ProductRepository().find_by_id(product["id"])["error_kind"] == "not_found"
        assert reconciler.pending_counts()["product"] == 0

    def test_transport_failure_keeps_cursor(self, db_session, gateway):
        gateway.down = True

        result = Reconciler(gateway).pull_updates("product")

        assert result == {"applied": [], "conflicts": [], "failed": []}
        cp = db_session.get(SyncCheckpoint, "product")
        assert cp is None or cp.pulled_since is None


class TestSyncAll:
    def test_sync_all_and_status(self, db_session, gateway):
        _record_sale()
        ProductRepository().create({"name": "Seeds"})
        reconciler = Reconciler(gateway)

        summary = reconciler.sync_all()

        assert summary["online"] is True
        assert set(summary["results"]) == {"category", "product", "sale"}
        status = reconciler.get_sync_status()
        assert status["online"] is True
        assert status["pending_counts"] == {"category": 0, "product": 0, "sale": 0}
        assert status["databases"] == ["agroplus_categories", "agroplus_products", "agroplus_sales"]
        assert status["checkpoints"]["sale"]["last_push_at"] is not None


class TestHttpRemoteGateway:
    def _gateway(self, handler):
        client = httpx.Client(base_url="http://server.test", transport=httpx.MockTransport(handler))
        return HttpRemoteGateway("http://server.test", client=client)

    def test_push_posts_documents(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={"accepted": ["sale_1"], "rejected": []})

        answer = self._gateway(handler).push("sale", [{"_id": "sale_1"}])

        assert seen["path"] == "/api/sync/sales/push"
        assert b"sale_1" in seen["body"]
        assert answer == {"accepted": ["sale_1"], "rejected": []}

    def test_fetch_changes_passes_cursor(self):
        def handler(request):
            assert request.url.params["since"] == "42"
            return httpx.Response(200, json={"docs": [{"_id": "product_1"}], "last_seq": "43"})

        answer = self._gateway(handler).fetch_changes("product", "42")
        assert answer == {"docs": [{"_id": "product_1"}], "last_seq": "43"}

    def test_server_error_is_unavailable(self):
        gateway = self._gateway(lambda request: httpx.Response(503))
        with pytest.raises(RemoteUnavailableError):
            gateway.push("sale", [])
        assert gateway.ping() is False
