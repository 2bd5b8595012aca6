"""
Pytest fixtures for possync backend tests.

Provides the app on an in-memory database, a per-test table wipe, the test
client, and a fake server-of-record gateway for reconciliation tests.
"""

import pytest
from possync import create_app
from possync.extensions import db
from possync.services.document_store import LocalDocumentStore
from possync.services.reconcile_service import RemoteGateway, RemoteUnavailableError


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'REMOTE_SYNC_URL': None,
        'OFFLINE_MAX_CONFLICT_RETRIES': 1,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def product_store(db_session):
    return LocalDocumentStore("product")


@pytest.fixture(scope='function')
def sale_store(db_session):
    return LocalDocumentStore("sale")


class InterleavingStore(LocalDocumentStore):
    """
    Store that lets another writer update the document right before each of the
    first `interleaved_writes` revision-checked puts, forcing a conflict.
    """

    def __init__(self, entity_type: str, interleaved_writes: int = 1, field: str = "name", value="Concurrent edit"):
        super().__init__(entity_type)
        self.remaining = interleaved_writes
        self.field = field
        self.value = value
        self.conflicting_puts = 0

    def put(self, document, *, discard_conflicts=False):
        if self.remaining and document.get("_rev"):
            self.remaining -= 1
            self.conflicting_puts += 1
            current = super().get(document["_id"])
            super().put({**current, self.field: self.value})
        return super().put(document, discard_conflicts=discard_conflicts)


class FakeGateway(RemoteGateway):
    """
    In-memory server of record.

    - accepts every pushed document unless its id is in `reject`
    - raises RemoteUnavailableError on every call while `down` is True
    - serves `changes[entity_type]` on fetch_changes
    """

    def __init__(self):
        self.down = False
        self.reject: dict[str, str] = {}
        self.ignore: set[str] = set()
        self.received: dict[str, list[dict]] = {}
        self.changes: dict[str, list[dict]] = {}
        self.cursor = "srv-1"
        self.fetch_calls: list[tuple] = []

    def push(self, entity_type, documents):
        if self.down:
            raise RemoteUnavailableError("connection refused")
        accepted, rejected = [], []
        for doc in documents:
            self.received.setdefault(entity_type, []).append(doc)
            if doc["_id"] in self.ignore:
                continue
            if doc["_id"] in self.reject:
                rejected.append({"id": doc["_id"], "error": self.reject[doc["_id"]]})
            else:
                accepted.append(doc["_id"])
        return {"accepted": accepted, "rejected": rejected}

    def fetch_changes(self, entity_type, since):
        if self.down:
            raise RemoteUnavailableError("connection refused")
        self.fetch_calls.append((entity_type, since))
        return {"docs": list(self.changes.get(entity_type, [])), "last_seq": self.cursor}

    def ping(self):
        return not self.down


@pytest.fixture(scope='function')
def gateway():
    return FakeGateway()
