import pytest

from librahub.config import settings
from librahub.services.remote_store import (
    DocumentNotFoundError,
    FirestoreStore,
    PermissionDeniedError,
    PreconditionFailedError,
    RemoteStoreError,
    RemoteUnavailableError,
    _field_path,
    decode_value,
    encode_value,
)


def test_encode_value_uses_firestore_wrappers():
    assert encode_value(None) == {"nullValue": None}
    assert encode_value(True) == {"booleanValue": True}
    assert encode_value(3) == {"integerValue": "3"}
    assert encode_value(0.5) == {"doubleValue": 0.5}
    assert encode_value(["a"]) == {"arrayValue": {"values": [{"stringValue": "a"}]}}
    assert encode_value({"n": 1}) == {"mapValue": {"fields": {"n": {"integerValue": "1"}}}}


def test_nested_document_survives_encoding():
    doc = {"title": "Dune", "copies": 5, "ratings": [4, 5], "reviews": [{"rating": 5, "text": "Great"}],
           "borrowedBy": None, "available": True, "finePerDay": 0.5}
    assert decode_value(encode_value(doc)) == doc


def test_decode_rejects_unknown_wrapper():
    with pytest.raises(ValueError):
        decode_value({"bytesValueX": "zz"})


def test_field_path_quotes_non_identifiers():
    assert _field_path("availableCopies") == "availableCopies"
    assert _field_path("due-date") == "`due-date`"


def test_project_id_is_required(monkeypatch):
    monkeypatch.setattr(settings, "remote_project_id", None)
    with pytest.raises(ValueError):
        FirestoreStore(project_id=None)


def test_list_documents_follows_pages(remote_store, fake_firestore):
    for i in range(305):
        fake_firestore.put("books", f"doc{i}", {"id": f"book-{i}"})

    documents = remote_store.list_documents("books")

    assert len(documents) == 305
    assert documents[0].id == "doc0"
    assert documents[0].data == {"id": "book-0"}
    assert documents[0].update_time
    list_calls = [r for r in fake_firestore.requests if r.method == "GET"]
    assert len(list_calls) == 2


def test_get_missing_document_returns_none(remote_store):
    assert remote_store.get_document("books", "missing") is None


def test_add_then_get(remote_store):
    created = remote_store.add_document("books", {"id": "book-1", "title": "Dune"})

    fetched = remote_store.get_document("books", created.id)
    assert fetched.data == {"id": "book-1", "title": "Dune"}


def test_set_document_overwrites_whole_document(remote_store, fake_firestore):
    fake_firestore.put("users", "user-1", {"name": "Old", "phone": "1"})

    remote_store.set_document("users", "user-1", {"name": "New"})

    assert fake_firestore.data("users")["user-1"] == {"name": "New"}


def test_update_document_only_touches_given_fields(remote_store, fake_firestore):
    fake_firestore.put("books", "abc", {"title": "Dune", "availableCopies": 2})

    updated = remote_store.update_document("books", "abc", {"availableCopies": 1})

    assert updated.data == {"title": "Dune", "availableCopies": 1}


def test_update_of_missing_document_fails(remote_store):
    with pytest.raises(DocumentNotFoundError):
        remote_store.update_document("books", "missing", {"title": "x"})


def test_update_with_stale_version_is_rejected(remote_store, fake_firestore):
    fake_firestore.put("books", "abc", {"availableCopies": 1})
    seen = remote_store.get_document("books", "abc")
    fake_firestore.put("books", "abc", {"availableCopies": 0})

    with pytest.raises(PreconditionFailedError):
        remote_store.update_document("books", "abc", {"availableCopies": 0}, update_time=seen.update_time)
    assert fake_firestore.data("books")["abc"] == {"availableCopies": 0}


def test_update_with_current_version_succeeds(remote_store, fake_firestore):
    fake_firestore.put("books", "abc", {"availableCopies": 1})
    seen = remote_store.get_document("books", "abc")

    updated = remote_store.update_document("books", "abc", {"availableCopies": 0}, update_time=seen.update_time)

    assert updated.update_time != seen.update_time


def test_delete_document(remote_store, fake_firestore):
    fake_firestore.put("books", "abc", {"title": "Dune"})
    remote_store.delete_document("books", "abc")
    assert fake_firestore.data("books") == {}

    with pytest.raises(DocumentNotFoundError):
        remote_store.delete_document("books", "abc")


@pytest.mark.parametrize("status,error", [
    (401, PermissionDeniedError),
    (403, PermissionDeniedError),
    (409, PreconditionFailedError),
    (429, RemoteUnavailableError),
    (503, RemoteUnavailableError),
    (400, RemoteStoreError),
])
def test_http_errors_map_to_store_errors(remote_store, fake_firestore, status, error):
    fake_firestore.fail_status = status
    with pytest.raises(error):
        remote_store.list_documents("books")


def test_network_failure_is_unavailable(remote_store, fake_firestore):
    fake_firestore.offline = True
    with pytest.raises(RemoteUnavailableError):
        remote_store.get_document("books", "abc")
