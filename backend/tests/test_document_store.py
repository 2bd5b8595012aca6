import pytest

from possync.services.document_store import LocalDocumentStore, matches_selector, sort_documents
from possync.validation import ConflictError, NotFoundError, ValidationError


class TestPutAndGet:
    def test_put_new_document_returns_first_generation_rev(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "Seeds", "price": 3.5})

        assert rev.startswith("1-")
        doc = product_store.get("product_1")
        assert doc["_id"] == "product_1"
        assert doc["id"] == "product_1"
        assert doc["_rev"] == rev
        assert doc["type"] == "product"
        assert doc["name"] == "Seeds"

    def test_update_with_current_rev_bumps_generation(self, product_store):
        rev1 = product_store.put({"_id": "product_1", "name": "Seeds"})
        rev2 = product_store.put({"_id": "product_1", "_rev": rev1, "name": "Corn seeds"})

        assert rev2.startswith("2-")
        assert product_store.get("product_1")["name"] == "Corn seeds"

    def test_update_with_stale_rev_is_conflict(self, product_store):
        """
        SCENARIO: two writers start from the same revision
        EXPECTED: the second write fails with ConflictError and nothing changes
        """
        rev1 = product_store.put({"_id": "product_1", "name": "Seeds"})
        product_store.put({"_id": "product_1", "_rev": rev1, "name": "First"})

        with pytest.raises(ConflictError) as excinfo:
            product_store.put({"_id": "product_1", "_rev": rev1, "name": "Second"})

        assert excinfo.value.kind.value == "conflict"
        assert product_store.get("product_1")["name"] == "First"

    def test_put_without_rev_on_existing_id_is_conflict(self, product_store):
        product_store.put({"_id": "product_1", "name": "Seeds"})

        with pytest.raises(ConflictError):
            product_store.put({"_id": "product_1", "name": "Duplicate"})

    def test_put_requires_id(self, product_store):
        with pytest.raises(ValidationError):
            product_store.put({"name": "No id"})

    def test_get_missing_is_not_found(self, product_store):
        with pytest.raises(NotFoundError) as excinfo:
            product_store.get("product_missing")
        assert str(excinfo.value) == "Product not found"

    def test_returned_documents_do_not_share_state(self, product_store):
        product_store.put({"_id": "product_1", "name": "Seeds", "tags": ["a"]})

        doc = product_store.get("product_1")
        doc["tags"].append("b")

        assert product_store.get("product_1")["tags"] == ["a"]

    def test_entity_types_are_separate_namespaces(self, db_session):
        products = LocalDocumentStore("product")
        sales = LocalDocumentStore("sale")
        products.put({"_id": "shared_1", "name": "Seeds"})

        with pytest.raises(NotFoundError):
            sales.get("shared_1")

    def test_unknown_entity_type_rejected(self, db_session):
        with pytest.raises(ValueError):
            LocalDocumentStore("customer")

    def test_store_name_uses_prefix(self, app, product_store):
        assert product_store.name == f"{app.config['LOCAL_DB_PREFIX']}_products"


class TestRemove:
    def test_removed_document_is_not_found(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "Seeds"})
        product_store.remove({"_id": "product_1", "_rev": rev})

        with pytest.raises(NotFoundError):
            product_store.get("product_1")
        assert product_store.query() == []

    def test_remove_with_stale_rev_is_conflict(self, product_store):
        rev1 = product_store.put({"_id": "product_1", "name": "Seeds"})
        product_store.put({"_id": "product_1", "_rev": rev1, "name": "Edited"})

        with pytest.raises(ConflictError):
            product_store.remove({"_id": "product_1", "_rev": rev1})

    def test_remove_missing_is_not_found(self, product_store):
        with pytest.raises(NotFoundError):
            product_store.remove({"_id": "product_1", "_rev": "1-abc"})

    def test_tombstone_listed_only_when_asked(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "Seeds"})
        tombstone_rev = product_store.remove({"_id": "product_1", "_rev": rev})

        assert product_store.all_docs() == []
        docs = product_store.all_docs(include_deleted=True)
        assert len(docs) == 1
        assert docs[0]["_deleted"] is True
        assert docs[0]["_rev"] == tombstone_rev
        assert "name" not in docs[0]

    def test_tombstoned_id_can_be_created_again(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "Seeds"})
        product_store.remove({"_id": "product_1", "_rev": rev})

        new_rev = product_store.put({"_id": "product_1", "name": "Seeds again"})

        assert new_rev.startswith("3-")
        assert product_store.get("product_1")["name"] == "Seeds again"

    def test_put_with_deleted_flag_removes(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "Seeds"})
        product_store.put({"_id": "product_1", "_rev": rev, "_deleted": True})

        with pytest.raises(NotFoundError):
            product_store.get("product_1")


class TestQuery:
    @pytest.fixture
    def catalogue(self, product_store):
        product_store.put({"_id": "product_a", "name": "Fertilizer", "price": 20, "stock_quantity": 4, "category_id": "cat_1"})
        product_store.put({"_id": "product_b", "name": "Seeds", "price": 5, "stock_quantity": 40, "category_id": "cat_2"})
        product_store.put({"_id": "product_c", "name": "Hoe", "price": 12.5, "stock_quantity": 0, "category_id": "cat_1"})
        return product_store

    def test_default_order_is_by_id(self, catalogue):
        assert [d["_id"] for d in catalogue.query()] == ["product_a", "product_b", "product_c"]

    def test_equality_selector(self, catalogue):
        docs = catalogue.query({"category_id": "cat_1"})
        assert {d["_id"] for d in docs} == {"product_a", "product_c"}

    def test_range_selector_and_sort(self, catalogue):
        docs = catalogue.query({"price": {"$gte": 10}}, sort=[{"price": "desc"}])
        assert [d["_id"] for d in docs] == ["product_a", "product_c"]

    def test_limit_and_skip(self, catalogue):
        docs = catalogue.query(sort=["name"], skip=1, limit=1)
        assert [d["name"] for d in docs] == ["Hoe"]

    def test_count(self, catalogue):
        assert catalogue.count({"stock_quantity": {"$lte": 4}}) == 2

    def test_with_prefix(self, product_store):
        product_store.put({"_id": "test_product_1", "name": "A"})
        product_store.put({"_id": "test_product_2", "name": "B"})
        product_store.put({"_id": "product_9", "name": "C"})

        assert [d["_id"] for d in product_store.with_prefix("test_product_")] == [
            "test_product_1",
            "test_product_2",
        ]

    def test_bulk_docs_reports_per_document(self, product_store):
        product_store.put({"_id": "product_1", "name": "Existing"})

        results = product_store.bulk_docs([
            {"_id": "product_2", "name": "New"},
            {"_id": "product_1", "name": "No rev"},
        ])

        assert results[0]["ok"] is True
        assert results[1]["error"] == "conflict"


class TestSelectorMatching:
    def test_operators(self):
        doc = {"name": "Seeds", "price": 5, "tags": ["x"], "meta": {"origin": "local"}}

        assert matches_selector(doc, {"price": {"$gt": 4, "$lt": 6}})
        assert matches_selector(doc, {"name": {"$in": ["Seeds", "Hoe"]}})
        assert matches_selector(doc, {"name": {"$nin": ["Hoe"]}})
        assert matches_selector(doc, {"meta.origin": "local"})
        assert matches_selector(doc, {"sku": {"$exists": False}})
        assert matches_selector(doc, {"name": {"$regex": "^See"}})
        assert matches_selector(doc, {"$or": [{"price": 1}, {"price": 5}]})
        assert not matches_selector(doc, {"$not": {"price": 5}})
        assert not matches_selector(doc, {"price": {"$gt": "a"}})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            matches_selector({"price": 5}, {"price": {"$near": 5}})

    def test_sort_uses_json_collation(self):
        docs = [{"v": "b"}, {"v": 2}, {"v": None}, {"v": True}, {"v": [1]}, {"v": {"k": 1}}]
        ordered = [d["v"] for d in sort_documents(docs, ["v"])]
        assert ordered == [None, True, 2, "b", [1], {"k": 1}]


class TestChangesFeed:
    def test_changes_since_sequence(self, product_store):
        product_store.put({"_id": "product_1", "name": "A"})
        seq_after_first = product_store.current_seq()
        rev = product_store.put({"_id": "product_2", "name": "B"})
        product_store.remove({"_id": "product_2", "_rev": rev})

        feed = product_store.changes(seq_after_first)

        assert [r["id"] for r in feed["results"]] == ["product_2"]
        assert feed["results"][0]["deleted"] is True
        assert feed["last_seq"] == product_store.current_seq()

    def test_changes_with_nothing_new_keeps_since(self, product_store):
        product_store.put({"_id": "product_1", "name": "A"})
        seq = product_store.current_seq()

        assert product_store.changes(seq) == {"results": [], "last_seq": seq}

    def test_unsynced_until_marked(self, product_store):
        rev = product_store.put({"_id": "product_1", "name": "A"})
        assert [d["_id"] for d in product_store.unsynced()] == ["product_1"]

        assert product_store.mark_synced("product_1", rev) is True
        assert product_store.unsynced() == []
        assert product_store.sync_state("product_1") == {"rev": rev, "deleted": False, "dirty": False}

    def test_mark_synced_with_old_rev_keeps_dirty(self, product_store):
        rev1 = product_store.put({"_id": "product_1", "name": "A"})
        product_store.put({"_id": "product_1", "_rev": rev1, "name": "B"})

        assert product_store.mark_synced("product_1", rev1) is False
        assert product_store.sync_state("product_1")["dirty"] is True


class TestConflictStorage:
    def test_add_and_drop_conflicts(self, product_store):
        product_store.put({"_id": "product_1", "name": "Local"})
        conflict_rev = product_store.add_conflict("product_1", {"_rev": "2-server", "name": "Server"})

        conflicts = product_store.get_conflicts("product_1")
        assert conflict_rev == "2-server"
        assert [c["name"] for c in conflicts] == ["Server"]

        # Same revision stored once
        product_store.add_conflict("product_1", {"_rev": "2-server", "name": "Server"})
        assert len(product_store.get_conflicts("product_1")) == 1

        assert product_store.drop_conflicts("product_1") == 1
        assert product_store.get_conflicts("product_1") == []
