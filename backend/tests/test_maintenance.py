from possync.services import maintenance_service, selftest_service
from possync.services.document_store import LocalDocumentStore
from possync.services.sales_repository import SalesRepository
from possync.validation import StoreError


def _old_sale(store, doc_id, sync_status):
    store.put({
        "_id": doc_id,
        "items": [{"quantity": 1, "price": 1, "total": 1}],
        "total_amount": 1,
        "sync_status": sync_status,
        "created_at": "2020-01-01T00:00:00.000Z",
        "updated_at": "2020-01-01T00:00:00.000Z",
    })


class TestCleanup:
    def test_only_old_synced_sales_removed(self, sale_store):
        _old_sale(sale_store, "sale_old_synced", "synced")
        _old_sale(sale_store, "sale_old_pending", "pending")
        _old_sale(sale_store, "sale_old_failed", "failed")
        recent = SalesRepository().create_sale({"items": [{"quantity": 1, "price": 1}]})["sale"]
        SalesRepository().mark_as_synced([recent["id"]])

        removed = maintenance_service.cleanup("sale", older_than_days=30)

        assert removed == 1
        remaining = {d["_id"] for d in sale_store.query()}
        assert remaining == {"sale_old_pending", "sale_old_failed", recent["id"]}

    def test_products_cleanup_uses_configured_retention(self, app, product_store):
        product_store.put({"_id": "product_old", "name": "Old", "created_at": "2020-01-01T00:00:00.000Z"})
        product_store.put({"_id": "product_new", "name": "New", "created_at": "2999-01-01T00:00:00.000Z"})

        assert maintenance_service.cleanup("product") == 1
        assert [d["_id"] for d in product_store.query()] == ["product_new"]


class TestSelfTest:
    def test_storage_and_sales_checks(self, db_session):
        storage = selftest_service.check_offline_storage()
        sales = selftest_service.check_offline_sales()

        assert storage["ok"] is True
        assert storage["count"] == 1
        assert sales["ok"] is True
        assert LocalDocumentStore("sale").get(sales["id"])["sync_status"] == "pending"

    def test_clear_test_data_empties_prefix_range(self, db_session):
        """
        SCENARIO: remove every document whose id starts with test_product_
        EXPECTED: the prefix range is empty afterwards, other documents stay
        """
        store = LocalDocumentStore("product")
        selftest_service.check_offline_storage()
        selftest_service.check_offline_storage()
        store.put({"_id": "product_keep", "name": "Real product"})
        selftest_service.check_offline_sales()

        removed = selftest_service.clear_test_data()

        assert removed == {"product": 2, "sale": 1}
        assert store.with_prefix("test_product_") == []
        assert LocalDocumentStore("sale").with_prefix("test_sale_") == []
        assert [d["_id"] for d in store.query()] == ["product_keep"]

    def test_clear_test_data_skips_documents_that_fail_to_delete(self, db_session):
        class LockedStore(LocalDocumentStore):
            def remove(self, document):
                raise StoreError("database is locked")

        selftest_service.check_offline_storage()
        selftest_service.check_offline_sales()

        removed = selftest_service.clear_test_data({"product": LockedStore("product")})

        assert removed == {"product": 0, "sale": 1}
        assert len(LocalDocumentStore("product").with_prefix("test_product_")) == 1


class TestCommands:
    def test_self_test_and_cleanup_commands(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["offline", "self-test"])
        assert result.exit_code == 0
        assert "PASS Offline storage" in result.output

        result = runner.invoke(args=["offline", "clear-test-data"])
        assert "Removed 1 test product(s) and 1 test sale(s)." in result.output

        result = runner.invoke(args=["maintenance", "cleanup", "--entity", "product", "--days", "1"])
        assert result.exit_code == 0
        assert "Removed 0 product document(s)." in result.output

    def test_sync_run_offline(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["sync", "run"])
        assert "working offline" in result.output
