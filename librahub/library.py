import asyncio
import logging
import random
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from librahub import database
from librahub.circulation import (
    BorrowIntent,
    Circulation,
    CirculationResult,
    ReturnReport,
    utc_now,
)
from librahub.config import settings
from librahub.database import LocalStore
from librahub.models import Account, Book, BorrowingRecord, Branch, LibrarySettings
from librahub.reconcile import LoadResult, SaveResult, SyncedRepository
from librahub.services.google_books_service import GoogleBooksService
from librahub.services.remote_store import FirestoreStore, RemoteStoreError
from librahub.utils.validators import (
    ISBNValidator,
    TextValidator,
    validate_account_fields,
    validate_book_fields,
)

logger = logging.getLogger(__name__)

DEFAULT_BRANCHES = [
    Branch("branch-1", "Main Library", "123 Library Street, Booktown, BT 12345", "(555) 123-4567",
           "main@librahub.com", "Mon-Fri: 9am-8pm, Sat: 10am-6pm, Sun: 12pm-5pm"),
    Branch("branch-2", "North Branch", "456 Reader Avenue, Booktown, BT 12346", "(555) 987-6543",
           "north@librahub.com", "Mon-Fri: 10am-7pm, Sat: 10am-5pm, Sun: Closed"),
    Branch("branch-3", "South Branch", "789 Book Boulevard, Booktown, BT 12347", "(555) 456-7890",
           "south@librahub.com", "Mon-Fri: 9am-7pm, Sat-Sun: 11am-4pm"),
]

DEFAULT_ACCOUNTS = [
    Account("admin-1", "Admin User", "admin@library.com", is_admin=True, role="System Administrator",
            library_card_number="ADMIN-001", registered_date="2023-01-15", branch="branch-1"),
    Account("user-1", "John Reader", "user@library.com", library_card_number="LIB-10042",
            registered_date="2023-03-22", branch="branch-1", phone="(555) 234-5678",
            address="101 Reader Lane, Booktown, BT 12345"),
    Account("user-2", "Sarah Bookworm", "sarah@example.com", library_card_number="LIB-10043",
            registered_date="2023-04-15", branch="branch-2", phone="(555) 345-6789",
            address="202 Novel Street, Booktown, BT 12345"),
]

SEED_TITLES = [
    "To Kill a Mockingbird",
    "1984",
    "The Great Gatsby",
    "Pride and Prejudice",
    "The Hobbit",
    "Sapiens: A Brief History of Humankind",
    "The Alchemist",
    "Atomic Habits",
    "Educated",
    "The Silent Patient",
    "Dune",
    "The Midnight Library",
]

# Seeding tops the catalog up from the metadata source below this many books.
MIN_SEED_BOOKS = 5

FALLBACK_BOOKS = [
    {
        "id": "book-1",
        "title": "To Kill a Mockingbird",
        "author": "Harper Lee",
        "isbn": "9780061120084",
        "category": "Fiction",
        "description": "The unforgettable novel of a childhood in a sleepy Southern town "
                       "and the crisis of conscience that rocked it.",
        "publishedYear": "1960",
        "coverImage": "/mockingbird-silhouette.png",
        "publisher": "HarperCollins",
        "pages": 336,
        "language": "English",
        "copies": 5,
        "availableCopies": 5,
        "branch": "branch-1",
        "ratings": [4, 5, 5, 4, 5],
        "reviews": [
            {"userId": "user-2", "text": "A timeless classic that everyone should read.",
             "rating": 5, "date": "2023-05-15"},
        ],
        "source": "fallback",
    },
]


def _placeholder_cover(title: str) -> str:
    return f"/placeholder.svg?height=400&width=300&query={quote(title)} book cover"


class Library:
    """Catalog, roster and loans over the local store and the optional remote mirror."""

    def __init__(self, db_file: Optional[str] = None, remote: Optional[FirestoreStore] = None,
                 metadata: Optional[GoogleBooksService] = None, clock=utc_now) -> None:
        self.local = LocalStore(db_file)
        if remote is None and settings.remote_enabled:
            remote = FirestoreStore()
        self.repository = SyncedRepository(self.local, remote)
        self.circulation = Circulation(self.repository, clock=clock)
        self.metadata = metadata or GoogleBooksService()
        self.clock = clock

    # ----------------- catalog -----------------

    def load_books(self) -> LoadResult:
        return self.repository.load(database.BOOKS)

    def list_books(self) -> List[Book]:
        return [Book.from_dict(b) for b in self.load_books().items]

    def find_book(self, book_id: str) -> Optional[Book]:
        data = self.repository.find(database.BOOKS, book_id)
        return Book.from_dict(data) if data else None

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        wanted = ISBNValidator.normalize_isbn(isbn)
        for data in self.repository.local_items(database.BOOKS):
            if ISBNValidator.normalize_isbn(str(data.get("isbn", ""))) == wanted:
                return Book.from_dict(data)
        return None

    def search_books(self, query: str = "", category: Optional[str] = None) -> List[Book]:
        q = (query or "").strip().lower()
        results = []
        for book in (Book.from_dict(b) for b in self.repository.local_items(database.BOOKS)):
            if category and category != "All" and book.category != category:
                continue
            if q and q not in book.title.lower() and q not in book.author.lower() and q not in book.isbn.lower():
                continue
            results.append(book)
        return results

    def categories(self) -> List[str]:
        seen = []
        for data in self.repository.local_items(database.BOOKS):
            category = data.get("category")
            if category and category not in seen:
                seen.append(category)
        return ["All"] + seen

    def add_book(self, book: Book) -> SaveResult:
        """Add a staff-entered book. Raises ValueError on invalid fields."""
        data = book.to_dict()
        validate_book_fields(data)
        if book.id and self.repository.find(database.BOOKS, book.id):
            raise ValueError(f"Book with ID {book.id} already exists.")
        now = self.clock().isoformat()
        data.update({
            "availableCopies": book.copies,
            "available": book.copies > 0,
            "borrowedBy": None,
            "dueDate": None,
            "source": "admin",
            "title": TextValidator.sanitize_text(book.title),
            "description": TextValidator.sanitize_text(book.description),
            "createdAt": now,
            "updatedAt": now,
        })
        data.pop("remoteId", None)
        return self.repository.save(database.BOOKS, data)

    def update_book(self, book_id: str, **changes: Any) -> Optional[SaveResult]:
        """Apply stored-format field changes (e.g. ``title``, ``copies``). None if not found."""
        data = self.repository.find(database.BOOKS, book_id)
        if data is None:
            return None
        data = dict(data)
        if "copies" in changes:
            # Copies on loan stay on loan when the total changes.
            diff = int(changes["copies"]) - int(data.get("copies", 1))
            data["availableCopies"] = max(0, int(data.get("availableCopies", 0)) + diff)
        protected = ("id", "remoteId", "borrowedBy", "dueDate", "availableCopies", "available")
        data.update({k: v for k, v in changes.items() if k not in protected})
        data["available"] = int(data.get("availableCopies", 0)) > 0
        data["updatedAt"] = self.clock().isoformat()
        validate_book_fields(data)
        return self.repository.save(database.BOOKS, data)

    def remove_book(self, book_id: str) -> SaveResult:
        data = self.repository.find(database.BOOKS, book_id)
        if data is None:
            return SaveResult(success=False, message=f"Book with ID {book_id} not found.")
        if any(r.book_id == book_id and r.active for r in self.circulation.records()):
            return SaveResult(success=False, record=data,
                              message="This book is on loan and cannot be deleted until it is returned.")
        return self.repository.delete(database.BOOKS, data)

    async def search_metadata(self, query: str) -> List[Dict[str, Any]]:
        return [m.to_book_fields() for m in await self.metadata.search(query)]

    async def add_book_by_isbn(self, isbn: str, copies: int = 1, branch: str = "branch-1") -> SaveResult:
        """Create a catalog entry pre-filled from the metadata source.

        Raises ValueError for a malformed ISBN and LookupError when no metadata is found.
        """
        if not isbn or not isbn.strip():
            raise ValueError("ISBN cannot be empty.")
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValueError("Invalid ISBN format.")
        if self.find_book_by_isbn(isbn) is not None:
            raise ValueError(f"Book with ISBN {isbn} already exists.")

        metadata = await self.metadata.lookup_by_isbn(isbn)
        if metadata is None:
            raise LookupError("Book not found.")

        fields = metadata.to_book_fields()
        fields["coverImage"] = fields["coverImage"] or _placeholder_cover(metadata.title)
        book = Book.from_dict({**fields, "copies": copies, "availableCopies": copies, "branch": branch})
        return self.add_book(book)

    # ----------------- roster -----------------

    def load_accounts(self) -> LoadResult:
        return self.repository.load(database.USERS)

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(a) for a in self.load_accounts().items]

    def find_account(self, account_id: str) -> Optional[Account]:
        data = self.repository.find(database.USERS, account_id)
        return Account.from_dict(data) if data else None

    def find_account_by_email(self, email: str) -> Optional[Account]:
        wanted = (email or "").strip().lower()
        for data in self.repository.local_items(database.USERS):
            if (data.get("email") or "").strip().lower() == wanted:
                return Account.from_dict(data)
        return None

    def register_account(self, name: str, email: str, is_admin: bool = False,
                         account_id: Optional[str] = None, role: Optional[str] = None,
                         branch: str = "branch-1", phone: str = "", address: str = "") -> SaveResult:
        """Create a patron (library card) or staff member (staff id). Raises ValueError."""
        validate_account_fields({"name": name, "email": email})
        if self.repository.remote_enabled:
            # Accounts that only exist remotely must count as taken.
            self.load_accounts()
        if self.find_account_by_email(email) is not None:
            raise ValueError(f"An account with email {email} already exists.")

        account = Account(
            id=account_id or self.repository.new_id(database.USERS),
            name=name.strip(),
            email=email.strip(),
            is_admin=is_admin,
            role=(role or "Librarian") if is_admin else None,
            branch=branch,
            phone=phone,
            address=address,
            registered_date=self.clock().isoformat(),
        )
        if is_admin:
            account.staff_id = f"STAFF-{random.randint(10000, 99999)}"
        else:
            account.library_card_number = f"LIB-{random.randint(10000, 99999)}"
        return self.repository.save(database.USERS, account.to_dict())

    def update_account(self, account_id: str, **changes: Any) -> Optional[SaveResult]:
        data = self.repository.find(database.USERS, account_id)
        if data is None:
            return None
        data = {**data, **{k: v for k, v in changes.items() if k not in ("id", "borrowedBooks")}}
        validate_account_fields(data)
        return self.repository.save(database.USERS, data)

    def delete_account(self, account_id: str) -> SaveResult:
        account = self.find_account(account_id)
        if account is None:
            return SaveResult(success=False, message=f"Account {account_id} not found.")
        if account.borrowed_books or self.circulation.active_records(account_id):
            return SaveResult(success=False, record=account.to_dict(),
                              message="This user has borrowed books. They must return all books "
                                      "before they can be deleted.")
        return self.repository.delete(database.USERS, account.to_dict())

    # ----------------- loans -----------------

    def borrow(self, book_id: str, account_id: str, intent: Optional[BorrowIntent] = None) -> CirculationResult:
        account = self.find_account(account_id)
        if account is None:
            return CirculationResult(success=False, message=f"Account {account_id} not found.")
        return self.circulation.borrow(book_id, account, intent)

    def return_book(self, book_id: str, account_id: str,
                    report: Optional[ReturnReport] = None) -> CirculationResult:
        account = self.find_account(account_id)
        if account is None:
            return CirculationResult(success=False, message=f"Account {account_id} not found.")
        return self.circulation.return_book(book_id, account, report)

    def load_records(self) -> LoadResult:
        return self.repository.load(database.BORROWING_RECORDS)

    def account_history(self, account_id: str) -> List[BorrowingRecord]:
        records = [r for r in self.circulation.records() if r.user_id == account_id]
        return sorted(records, key=lambda r: r.borrow_date, reverse=True)

    def borrowed_books(self, account_id: str) -> List[Book]:
        """Books held by an account: active loan records, plus legacy ``borrowedBy`` marks."""
        held = [r.book_id for r in self.circulation.active_records(account_id)]
        for data in self.repository.local_items(database.BOOKS):
            if data.get("borrowedBy") == account_id and data.get("id") not in held:
                held.append(data.get("id"))
        books = [self.find_book(book_id) for book_id in held]
        return [b for b in books if b is not None]

    def sync_account_loans(self, account_id: str) -> Optional[SaveResult]:
        """Add every actively borrowed book id to the account's borrowedBooks list."""
        account = self.find_account(account_id)
        if account is None:
            return None
        missing = [r.book_id for r in self.circulation.active_records(account_id)
                   if r.book_id not in account.borrowed_books]
        if not missing:
            return SaveResult(success=True, record=account.to_dict(), message="Already up to date.")
        account.borrowed_books.extend(missing)
        return self.repository.save(database.USERS, account.to_dict())

    def overdue_loans(self) -> List[Dict[str, Any]]:
        overdue = []
        for record in self.circulation.records():
            if not record.active:
                continue
            fine = self.circulation.calculate_fine(record.due_date)
            if fine > 0:
                overdue.append({"record": record, "fine": fine})
        return overdue

    def calculate_fine(self, due_date: Optional[str]) -> Decimal:
        return self.circulation.calculate_fine(due_date)

    # ----------------- settings / branches -----------------

    def get_settings(self) -> LibrarySettings:
        return LibrarySettings.from_dict(self.repository.load_settings().items[0])

    def update_settings(self, **changes: Any) -> SaveResult:
        current = self.get_settings().to_dict()
        current.update(changes)
        return self.repository.save_settings(LibrarySettings.from_dict(current).to_dict())

    def list_branches(self) -> List[Branch]:
        return [Branch.from_dict(b) for b in self.repository.load(database.BRANCHES).items]

    # ----------------- seeding / maintenance -----------------

    async def _fetch_seed_books(self) -> List[dict]:
        results = await asyncio.gather(*(self.metadata.search(title) for title in SEED_TITLES))
        if not any(results):
            raise LookupError("The metadata source returned no books.")

        books = []
        for index, (title, matches) in enumerate(zip(SEED_TITLES, results)):
            fields = matches[0].to_book_fields() if matches else {}
            books.append({
                "id": f"book-{index + 1}",
                "title": fields.get("title") or title,
                "author": fields.get("author") or "Unknown Author",
                "isbn": fields.get("isbn") or f"978000000000{index}",
                "category": fields.get("category") or "Fiction",
                "description": fields.get("description") or "No description available.",
                "publishedYear": fields.get("publishedYear") or "2000",
                "available": True,
                "borrowedBy": None,
                "dueDate": None,
                "coverImage": fields.get("coverImage") or _placeholder_cover(title),
                "publisher": fields.get("publisher") or "Unknown Publisher",
                "pages": fields.get("pages") or 300,
                "language": fields.get("language") or "English",
                "copies": 5,
                "availableCopies": 5,
                "branch": f"branch-{(index % 3) + 1}",
                "ratings": [4, 5, 5, 4, 5][: (index % 5) + 1],
                "reviews": [
                    {"userId": "user-2", "text": "A great read, highly recommended!",
                     "rating": 5, "date": "2023-05-15"},
                ] if index % 3 == 0 else [],
                "source": "google_books",
            })
        return books

    async def initialize(self) -> Dict[str, int]:
        """Seed reference data and a starter catalog; existing data is kept."""
        if not self.local.get_collection(database.BRANCHES):
            self.local.set_collection(database.BRANCHES, [b.to_dict() for b in DEFAULT_BRANCHES])
        if not self.local.get_collection(database.USERS):
            self.local.set_collection(database.USERS, [a.to_dict() for a in DEFAULT_ACCOUNTS])

        books = self.repository.load(database.BOOKS).items
        if len(books) < MIN_SEED_BOOKS:
            try:
                seeded = await self._fetch_seed_books()
            except LookupError as e:
                logger.error(f"Error fetching seed books, using built-in books: {e}")
                seeded = [dict(b) for b in FALLBACK_BOOKS]
            known = {b.get("id") for b in books}
            for book in seeded:
                if book["id"] not in known:
                    self.repository.save(database.BOOKS, book)
            books = self.local.get_collection(database.BOOKS)
            logger.info(f"Catalog seeded, {len(books)} books stored")

        if not self.local.has(database.SETTINGS):
            self.local.set(database.SETTINGS, LibrarySettings().to_dict())
        if not self.local.has(database.RESERVATIONS):
            self.local.set_collection(database.RESERVATIONS, [])
        if not self.local.has(database.BORROWING_RECORDS):
            self.local.set_collection(database.BORROWING_RECORDS, [])

        return {
            "branches": len(self.local.get_collection(database.BRANCHES)),
            "users": len(self.local.get_collection(database.USERS)),
            "books": len(books),
        }

    async def reset_catalog(self) -> Dict[str, int]:
        """Drop the local catalog and seed it again."""
        self.local.remove(database.BOOKS)
        logger.info("Books data cleared, reinitializing")
        return await self.initialize()

    def sync_all(self) -> Dict[str, LoadResult]:
        """Reconcile every collection with the remote store."""
        results = {}
        for collection in (database.USERS, database.BOOKS, database.BRANCHES, database.BORROWING_RECORDS):
            results[collection] = self.repository.load(collection)
        results[database.SETTINGS] = self.repository.load_settings()
        return results

    def migrate_to_remote(self) -> Dict[str, Dict[str, int]]:
        """Copy every local collection to the remote store, continuing past failures."""
        if not self.repository.remote_enabled:
            raise RuntimeError("No remote store is configured.")

        report: Dict[str, Dict[str, int]] = {}
        for collection in (database.USERS, database.BOOKS, database.BRANCHES, database.BORROWING_RECORDS):
            counts = {"migrated": 0, "failed": 0}
            for item in self.local.get_collection(collection):
                if collection == database.BRANCHES:
                    try:
                        self.repository.remote.set_document(database.BRANCHES, item["id"], item)
                        counts["migrated"] += 1
                    except RemoteStoreError as e:
                        logger.error(f"Error migrating branch {item.get('name')}: {e}")
                        counts["failed"] += 1
                    continue
                result = self.repository.save(collection, item)
                if result.remote_synced:
                    counts["migrated"] += 1
                else:
                    counts["failed"] += 1
            report[collection] = counts

        settings_result = self.repository.save_settings(self.get_settings().to_dict())
        report[database.SETTINGS] = {
            "migrated": int(settings_result.remote_synced),
            "failed": int(not settings_result.remote_synced),
        }
        logger.info(f"Migration finished: {report}")
        return report
