import itertools
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from librahub.config import settings
from librahub.database import LocalStore
from librahub.library import Library
from librahub.services.cache_manager import cache_manager
from librahub.services.google_books_service import GoogleBooksService
from librahub.services.http_client import HTTPClient
from librahub.services.remote_store import FirestoreStore, decode_fields, encode_fields
from librahub.utils.ui_helpers import OUTPUT_MODE_ENV

FAKE_BASE_URL = "https://firestore.test/v1"
FAKE_PROJECT = "test-project"


class FakeFirestore:
    """In-memory stand-in for the Firestore REST documents API."""

    def __init__(self):
        self.collections = {}
        self.requests = []
        self.offline = False
        self.fail_status = None
        # (collection, id) pairs changed by "someone else" right before the next conditional PATCH
        self.concurrent_writes = set()
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)

    # ----------------- test helpers -----------------

    def _tick(self) -> str:
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return (base + timedelta(microseconds=next(self._clock))).isoformat().replace("+00:00", "Z")

    def put(self, collection: str, doc_id: str, data: dict) -> None:
        self.collections.setdefault(collection, {})[doc_id] = {
            "fields": encode_fields(data),
            "updateTime": self._tick(),
        }

    def data(self, collection: str) -> dict:
        return {doc_id: decode_fields(doc["fields"])
                for doc_id, doc in self.collections.get(collection, {}).items()}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # ----------------- protocol -----------------

    def _name(self, collection: str, doc_id: str) -> str:
        return f"projects/{FAKE_PROJECT}/databases/(default)/documents/{collection}/{doc_id}"

    def _document(self, collection: str, doc_id: str) -> dict:
        doc = self.collections[collection][doc_id]
        return {"name": self._name(collection, doc_id), "fields": doc["fields"],
                "updateTime": doc["updateTime"], "createTime": doc["updateTime"]}

    def _error(self, code: int, status: str, message: str) -> httpx.Response:
        return httpx.Response(code, json={"error": {"code": code, "status": status, "message": message}})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_status is not None:
            return self._error(self.fail_status, "INTERNAL", "injected failure")

        path = request.url.path.split("/documents/", 1)[1]
        parts = path.split("/")
        params = request.url.params
        if len(parts) == 1:
            return self._collection_request(request, parts[0], params)
        return self._document_request(request, parts[0], parts[1], params)

    def _collection_request(self, request, collection, params):
        docs = self.collections.setdefault(collection, {})
        if request.method == "GET":
            ids = list(docs)
            start = int(params.get("pageToken", 0))
            size = int(params.get("pageSize", 300))
            page = ids[start:start + size]
            payload = {"documents": [self._document(collection, i) for i in page]}
            if start + size < len(ids):
                payload["nextPageToken"] = str(start + size)
            return httpx.Response(200, json=payload)
        if request.method == "POST":
            doc_id = f"auto{next(self._ids)}"
            body = json.loads(request.content)
            docs[doc_id] = {"fields": body.get("fields", {}), "updateTime": self._tick()}
            return httpx.Response(200, json=self._document(collection, doc_id))
        return self._error(400, "INVALID_ARGUMENT", f"{request.method} on a collection")

    def _document_request(self, request, collection, doc_id, params):
        docs = self.collections.setdefault(collection, {})
        exists = doc_id in docs

        if request.method == "GET":
            if not exists:
                return self._error(404, "NOT_FOUND", f"No document to get: {doc_id}")
            return httpx.Response(200, json=self._document(collection, doc_id))

        if params.get("currentDocument.exists") == "true" and not exists:
            return self._error(404, "NOT_FOUND", f"No document to update: {doc_id}")

        if request.method == "DELETE":
            docs.pop(doc_id, None)
            return httpx.Response(200, json={})

        if request.method == "PATCH":
            expected = params.get("currentDocument.updateTime")
            if expected is not None:
                if (collection, doc_id) in self.concurrent_writes:
                    self.concurrent_writes.discard((collection, doc_id))
                    docs[doc_id]["updateTime"] = self._tick()
                if not exists or docs[doc_id]["updateTime"] != expected:
                    return self._error(400, "FAILED_PRECONDITION", "the stored version does not match")

            fields = json.loads(request.content).get("fields", {})
            mask = [p.strip("`") for p in params.get_list("updateMask.fieldPaths")]
            if mask and exists:
                merged = dict(docs[doc_id]["fields"])
                for path in mask:
                    if path in fields:
                        merged[path] = fields[path]
                    else:
                        merged.pop(path, None)
                fields = merged
            docs[doc_id] = {"fields": fields, "updateTime": self._tick()}
            return httpx.Response(200, json=self._document(collection, doc_id))

        return self._error(400, "INVALID_ARGUMENT", f"Unsupported method {request.method}")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep tests away from real services and from each other's state."""
    monkeypatch.setattr(settings, "enable_remote_sync", False)
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    cache_manager.clear()
    yield
    cache_manager.clear()


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def local_store(db_file):
    return LocalStore(db_file)


@pytest.fixture
def fake_firestore():
    return FakeFirestore()


@pytest.fixture
def remote_store(fake_firestore):
    client = HTTPClient(transport=fake_firestore.transport())
    store = FirestoreStore(project_id=FAKE_PROJECT, database="(default)", api_key=None,
                           base_url=FAKE_BASE_URL, http_client=client, timeout=5)
    yield store
    client.close()


@pytest.fixture
def offline_metadata():
    return GoogleBooksService(enabled=False)


@pytest.fixture
def make_metadata():
    """Build a GoogleBooksService answering from a request handler."""
    def factory(handler):
        client = HTTPClient(async_transport=httpx.MockTransport(handler))
        return GoogleBooksService(api_key=None, http_client=client, enabled=True)
    return factory


@pytest.fixture
def lib(db_file, offline_metadata):
    return Library(db_file=db_file, metadata=offline_metadata)


@pytest.fixture
def synced_lib(db_file, remote_store, offline_metadata):
    return Library(db_file=db_file, remote=remote_store, metadata=offline_metadata)
