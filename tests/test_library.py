import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from librahub import database
from librahub.library import SEED_TITLES, Library
from librahub.models import Book


def make_book(**overrides):
    fields = dict(id=None, title="Dune", author="Frank Herbert", isbn="9780441172719",
                  category="Fiction", copies=2)
    fields.update(overrides)
    return Book(**fields)


def volume_for(title):
    return {"id": "v", "volumeInfo": {
        "title": title,
        "authors": ["Some Author"],
        "industryIdentifiers": [{"type": "ISBN_13", "identifier": "9780306406157"}],
        "publishedDate": "2001",
        "categories": ["Fiction"],
    }}


@pytest.fixture
def google_books(make_metadata):
    def handler(request):
        query = request.url.params["q"]
        return httpx.Response(200, json={"items": [volume_for(query)]})
    return make_metadata(handler)


@pytest.fixture
def patron(lib):
    return lib.register_account("Jane Doe", "jane@example.com").record["id"]


# ----------------- catalog -----------------

def test_empty_catalog(lib):
    assert lib.list_books() == []
    assert lib.categories() == ["All"]


def test_add_book_fills_catalog_defaults(lib):
    result = lib.add_book(make_book(copies=3, available_copies=1))

    assert result.success
    stored = lib.find_book(result.record["id"])
    assert stored.available_copies == 3
    assert stored.source == "admin"
    assert stored.created_at is not None
    assert stored.borrowed_by is None


def test_add_book_validates_fields(lib):
    with pytest.raises(ValueError, match="title is required"):
        lib.add_book(make_book(title=""))
    assert lib.list_books() == []


def test_search_and_categories(lib):
    lib.add_book(make_book())
    lib.add_book(make_book(title="Sapiens", author="Yuval Noah Harari", isbn="9780099590088",
                           category="History"))

    assert [b.title for b in lib.search_books("harari")] == ["Sapiens"]
    assert [b.title for b in lib.search_books("9780441172719")] == ["Dune"]
    assert [b.title for b in lib.search_books("", "History")] == ["Sapiens"]
    assert len(lib.search_books("", "All")) == 2
    assert lib.categories() == ["All", "Fiction", "History"]


def test_update_book_keeps_loaned_copies(lib, patron):
    book_id = lib.add_book(make_book(copies=2)).record["id"]
    lib.borrow(book_id, patron)

    lib.update_book(book_id, copies=4, title="Dune (Deluxe)")

    stored = lib.find_book(book_id)
    assert stored.title == "Dune (Deluxe)"
    assert stored.copies == 4
    assert stored.available_copies == 3
    assert stored.borrowed_by == patron


def test_update_unknown_book(lib):
    assert lib.update_book("book-404", title="x") is None


def test_remove_book(lib, patron):
    book_id = lib.add_book(make_book(copies=1)).record["id"]
    lib.borrow(book_id, patron)

    refused = lib.remove_book(book_id)
    assert not refused.success
    assert lib.find_book(book_id) is not None

    lib.return_book(book_id, patron)
    assert lib.remove_book(book_id).success
    assert lib.find_book(book_id) is None
    assert not lib.remove_book(book_id).success


def test_add_by_isbn_uses_metadata(db_file, google_books):
    lib = Library(db_file=db_file, metadata=google_books)

    result = asyncio.run(lib.add_book_by_isbn("9780306406157", copies=2))

    stored = lib.find_book(result.record["id"])
    assert stored.isbn == "9780306406157"
    assert stored.author == "Some Author"
    assert stored.copies == 2
    assert stored.cover_image.startswith("/placeholder.svg")

    with pytest.raises(ValueError, match="already exists"):
        asyncio.run(lib.add_book_by_isbn("978-0-306-40615-7"))


def test_add_by_isbn_errors(lib):
    with pytest.raises(ValueError, match="Invalid ISBN"):
        asyncio.run(lib.add_book_by_isbn("12345"))
    with pytest.raises(LookupError):
        asyncio.run(lib.add_book_by_isbn("9780306406157"))


# ----------------- roster -----------------

def test_register_patron_and_staff(lib):
    patron = lib.register_account("Jane Doe", "jane@example.com").record
    staff = lib.register_account("Sam Staff", "sam@example.com", is_admin=True).record

    assert patron["libraryCardNumber"].startswith("LIB-")
    assert "staffId" not in patron
    assert staff["staffId"].startswith("STAFF-")
    assert staff["isAdmin"] is True
    assert staff["role"] == "Librarian"
    assert {a.email for a in lib.list_accounts()} == {"jane@example.com", "sam@example.com"}


def test_register_rejects_duplicate_email(lib, patron):
    with pytest.raises(ValueError, match="already exists"):
        lib.register_account("Other Jane", "JANE@example.com")


def test_register_rejects_email_known_only_remotely(synced_lib, fake_firestore):
    fake_firestore.put("users", "uid-remote", {"name": "Remote Reader", "email": "dup@x.com",
                                               "borrowedBooks": []})

    with pytest.raises(ValueError, match="already exists"):
        synced_lib.register_account("New Person", "DUP@x.com")

    assert set(fake_firestore.data("users")) == {"uid-remote"}
    assert [a.id for a in synced_lib.list_accounts()] == ["uid-remote"]


def test_delete_account_refused_while_books_are_held(lib, patron):
    book_id = lib.add_book(make_book()).record["id"]
    lib.borrow(book_id, patron)

    refused = lib.delete_account(patron)
    assert not refused.success
    assert "must return all books" in refused.message

    lib.return_book(book_id, patron)
    assert lib.delete_account(patron).success
    assert lib.find_account(patron) is None


def test_update_account(lib, patron):
    lib.update_account(patron, phone="(555) 000-1111", borrowedBooks=["book-9"])

    stored = lib.find_account(patron)
    assert stored.phone == "(555) 000-1111"
    assert stored.borrowed_books == []


# ----------------- loans -----------------

def test_borrow_unknown_account(lib):
    book_id = lib.add_book(make_book()).record["id"]
    result = lib.borrow(book_id, "user-404")
    assert not result.success
    assert lib.find_book(book_id).available_copies == 2


def test_history_and_borrowed_books(lib, patron):
    first = lib.add_book(make_book()).record["id"]
    second = lib.add_book(make_book(title="Emma", author="Jane Austen", isbn="9780141439587")).record["id"]
    lib.borrow(first, patron)
    lib.borrow(second, patron)
    lib.return_book(first, patron)

    history = lib.account_history(patron)
    assert {r.book_id for r in history} == {first, second}
    assert [b.id for b in lib.borrowed_books(patron)] == [second]


def test_borrowed_books_include_legacy_marks(lib, patron):
    book_id = lib.add_book(make_book()).record["id"]
    books = lib.local.get_collection(database.BOOKS)
    books[0]["borrowedBy"] = patron
    lib.local.set_collection(database.BOOKS, books)

    assert [b.id for b in lib.borrowed_books(patron)] == [book_id]


def test_sync_account_loans_restores_missing_ids(lib, patron):
    book_id = lib.add_book(make_book()).record["id"]
    lib.borrow(book_id, patron)
    users = lib.local.get_collection(database.USERS)
    users[0]["borrowedBooks"] = []
    lib.local.set_collection(database.USERS, users)

    lib.sync_account_loans(patron)

    assert lib.find_account(patron).borrowed_books == [book_id]
    assert lib.sync_account_loans("user-404") is None


def test_overdue_loans(db_file, offline_metadata):
    now = [datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)]
    lib = Library(db_file=db_file, metadata=offline_metadata, clock=lambda: now[0])
    patron = lib.register_account("Jane Doe", "jane@example.com").record["id"]
    book_id = lib.add_book(make_book()).record["id"]
    lib.borrow(book_id, patron)
    assert lib.overdue_loans() == []

    now[0] += timedelta(days=24)

    overdue = lib.overdue_loans()
    assert len(overdue) == 1
    assert overdue[0]["record"].book_id == book_id
    assert overdue[0]["fine"] == Decimal("5.00")


def test_settings_drive_due_dates(lib, patron):
    lib.update_settings(loanDuration=7)
    assert lib.get_settings().loan_duration == 7

    book_id = lib.add_book(make_book()).record["id"]
    record = lib.borrow(book_id, patron).record
    borrowed = datetime.fromisoformat(record.borrow_date)
    assert datetime.fromisoformat(record.due_date) - borrowed == timedelta(days=7)


# ----------------- seeding and migration -----------------

def test_initialize_falls_back_to_built_in_books(lib):
    counts = asyncio.run(lib.initialize())

    assert counts == {"branches": 3, "users": 3, "books": 1}
    assert lib.list_books()[0].source == "fallback"
    assert lib.get_settings().loan_duration == 14
    assert lib.local.get_collection(database.RESERVATIONS) == []
    assert lib.local.has(database.BORROWING_RECORDS)


def test_initialize_seeds_popular_titles(db_file, google_books):
    lib = Library(db_file=db_file, metadata=google_books)

    counts = asyncio.run(lib.initialize())

    assert counts["books"] == len(SEED_TITLES)
    books = lib.list_books()
    assert {b.source for b in books} == {"google_books"}
    assert all(b.copies == 5 and b.available_copies == 5 for b in books)
    assert books[0].title == SEED_TITLES[0]


def test_initialize_keeps_existing_data(lib):
    lib.register_account("Jane Doe", "jane@example.com")
    asyncio.run(lib.initialize())
    asyncio.run(lib.initialize())

    assert [a.email for a in lib.list_accounts()] == ["jane@example.com"]
    assert len(lib.list_books()) == 1


def test_reset_catalog_reseeds(lib):
    lib.add_book(make_book(title="Custom"))
    lib.add_book(make_book(title="Other"))

    asyncio.run(lib.reset_catalog())

    assert [b.source for b in lib.list_books()] == ["fallback"]


def test_migrate_requires_remote(lib):
    with pytest.raises(RuntimeError):
        lib.migrate_to_remote()


def test_migrate_pushes_local_data(synced_lib, fake_firestore):
    fake_firestore.offline = True
    asyncio.run(synced_lib.initialize())
    fake_firestore.offline = False

    report = synced_lib.migrate_to_remote()

    assert report["users"] == {"migrated": 3, "failed": 0}
    assert report["books"] == {"migrated": 1, "failed": 0}
    assert report["branches"] == {"migrated": 3, "failed": 0}
    assert report["settings"] == {"migrated": 1, "failed": 0}
    assert set(fake_firestore.data("staff")) == {"admin-1"}
    assert set(fake_firestore.data("users")) == {"user-1", "user-2"}
    assert set(fake_firestore.data("branches")) == {"branch-1", "branch-2", "branch-3"}
    assert synced_lib.list_books()[0].remote_id is not None


def test_synced_catalog_reads_remote_books(synced_lib, fake_firestore):
    fake_firestore.put("books", "r1", {"id": "book-7", "title": "Remote Book", "author": "Someone",
                                       "isbn": "9780306406157", "category": "Fiction", "copies": 1})

    assert [b.title for b in synced_lib.list_books()] == ["Remote Book"]
    assert synced_lib.find_book("book-7").remote_id == "r1"
