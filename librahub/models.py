from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


PLACEHOLDER_COVER = "/placeholder.svg?height=400&width=300&query=Book cover"

BORROWED = "borrowed"
RETURNED = "returned"


def _int(value: Any, default: int = 0) -> int:
    # Stored documents are untyped JSON; numbers may arrive as strings.
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _extra(data: dict, known: tuple) -> dict:
    return {k: v for k, v in data.items() if k not in known}


@dataclass
class Book:
    """A catalog entry. ``borrowed_by``/``due_date`` mirror the latest active loan."""

    id: str | None
    title: str
    author: str
    isbn: str = ""
    category: str = "Uncategorized"
    description: str = ""
    published_year: str = ""
    publisher: str = ""
    pages: int = 0
    language: str = "English"
    cover_image: str = PLACEHOLDER_COVER
    copies: int = 1
    available_copies: int = 1
    branch: str = "branch-1"
    borrowed_by: str | None = None
    due_date: str | None = None
    ratings: list = field(default_factory=list)
    reviews: list = field(default_factory=list)
    source: str = "admin"
    remote_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    extra: dict = field(default_factory=dict)

    _KEYS = (
        "id", "title", "author", "isbn", "category", "description", "publishedYear",
        "publisher", "pages", "language", "coverImage", "copies", "availableCopies",
        "branch", "available", "borrowedBy", "dueDate", "ratings", "reviews", "source",
        "remoteId", "createdAt", "updatedAt",
    )

    def __post_init__(self) -> None:
        self.title = (self.title or "").strip()
        self.author = (self.author or "").strip()
        self.isbn = (self.isbn or "").strip()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    @property
    def available(self) -> bool:
        return self.available_copies > 0

    @property
    def average_rating(self) -> float:
        if not self.ratings:
            return 0.0
        return round(sum(self.ratings) / len(self.ratings), 1)

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "description": self.description,
            "publishedYear": self.published_year,
            "publisher": self.publisher,
            "pages": self.pages,
            "language": self.language,
            "coverImage": self.cover_image,
            "copies": self.copies,
            "availableCopies": self.available_copies,
            "branch": self.branch,
            "available": self.available,
            "borrowedBy": self.borrowed_by,
            "dueDate": self.due_date,
            "ratings": list(self.ratings),
            "reviews": list(self.reviews),
            "source": self.source,
        })
        # Optional bookkeeping keys are only written once known.
        for key, value in (("remoteId", self.remote_id), ("createdAt", self.created_at),
                           ("updatedAt", self.updated_at)):
            if value is not None:
                data[key] = value
        return data

    @staticmethod
    def from_dict(data: dict) -> "Book":
        copies = _int(data.get("copies"), 1)
        available_copies = _int(data.get("availableCopies"), copies)
        return Book(
            id=data.get("id"),
            title=data.get("title") or "",
            author=data.get("author") or "",
            isbn=str(data.get("isbn") or ""),
            category=data.get("category") or "Uncategorized",
            description=data.get("description") or "",
            published_year=str(data.get("publishedYear") or ""),
            publisher=data.get("publisher") or "",
            pages=_int(data.get("pages")),
            language=data.get("language") or "English",
            cover_image=data.get("coverImage") or PLACEHOLDER_COVER,
            copies=copies,
            available_copies=available_copies,
            branch=data.get("branch") or "branch-1",
            borrowed_by=data.get("borrowedBy"),
            due_date=data.get("dueDate"),
            ratings=list(data.get("ratings") or []),
            reviews=list(data.get("reviews") or []),
            source=data.get("source") or "admin",
            remote_id=data.get("remoteId"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            extra=_extra(data, Book._KEYS),
        )


@dataclass
class Account:
    """A patron or staff member. ``email`` is the identity used during reconciliation."""

    id: str | None
    name: str
    email: str
    is_admin: bool = False
    role: str | None = None
    branch: str = "branch-1"
    phone: str = ""
    address: str = ""
    registered_date: str | None = None
    library_card_number: str | None = None
    staff_id: str | None = None
    borrowed_books: list = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    _KEYS = (
        "id", "name", "email", "isAdmin", "role", "branch", "phone", "address",
        "registeredDate", "libraryCardNumber", "staffId", "borrowedBooks",
    )

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "isAdmin": self.is_admin,
            "branch": self.branch,
            "phone": self.phone,
            "address": self.address,
            "registeredDate": self.registered_date,
            "borrowedBooks": list(self.borrowed_books),
        })
        if self.role is not None:
            data["role"] = self.role
        if self.library_card_number is not None:
            data["libraryCardNumber"] = self.library_card_number
        if self.staff_id is not None:
            data["staffId"] = self.staff_id
        return data

    @staticmethod
    def from_dict(data: dict) -> "Account":
        return Account(
            id=data.get("id"),
            name=data.get("name") or "",
            email=data.get("email") or "",
            is_admin=bool(data.get("isAdmin", False)),
            role=data.get("role"),
            branch=data.get("branch") or "branch-1",
            phone=data.get("phone") or "",
            address=data.get("address") or "",
            registered_date=data.get("registeredDate"),
            library_card_number=data.get("libraryCardNumber"),
            staff_id=data.get("staffId"),
            borrowed_books=list(data.get("borrowedBooks") or []),
            extra=_extra(data, Account._KEYS),
        )


@dataclass
class BorrowingRecord:
    """One loan lifecycle. Moves from ``borrowed`` to ``returned`` exactly once."""

    id: str
    book_id: str
    user_id: str
    borrow_date: str
    due_date: str
    status: str = BORROWED
    return_date: str | None = None
    condition: str | None = None
    purpose: str = "personal"
    notes: str = ""
    feedback: str | None = None
    fine: float | None = None
    remote_id: str | None = None
    extra: dict = field(default_factory=dict)

    _KEYS = (
        "id", "bookId", "userId", "borrowDate", "dueDate", "status", "returnDate",
        "condition", "purpose", "notes", "feedback", "fine", "remoteId",
    )

    @property
    def active(self) -> bool:
        return self.status == BORROWED

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "bookId": self.book_id,
            "userId": self.user_id,
            "borrowDate": self.borrow_date,
            "dueDate": self.due_date,
            "status": self.status,
            "returnDate": self.return_date,
            "condition": self.condition,
            "purpose": self.purpose,
            "notes": self.notes,
            "feedback": self.feedback,
        })
        if self.fine is not None:
            data["fine"] = self.fine
        if self.remote_id is not None:
            data["remoteId"] = self.remote_id
        return data

    @staticmethod
    def from_dict(data: dict) -> "BorrowingRecord":
        return BorrowingRecord(
            id=data.get("id") or "",
            book_id=data.get("bookId") or "",
            user_id=data.get("userId") or "",
            borrow_date=data.get("borrowDate") or "",
            due_date=data.get("dueDate") or "",
            status=data.get("status") or BORROWED,
            return_date=data.get("returnDate"),
            condition=data.get("condition"),
            purpose=data.get("purpose") or "personal",
            notes=data.get("notes") or "",
            feedback=data.get("feedback"),
            fine=data.get("fine"),
            remote_id=data.get("remoteId"),
            extra=_extra(data, BorrowingRecord._KEYS),
        )


@dataclass
class Branch:
    id: str
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""
    hours: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "email": self.email,
            "hours": self.hours,
        }

    @staticmethod
    def from_dict(data: dict) -> "Branch":
        return Branch(
            id=data.get("id") or "",
            name=data.get("name") or "",
            address=data.get("address") or "",
            phone=data.get("phone") or "",
            email=data.get("email") or "",
            hours=data.get("hours") or "",
        )


@dataclass
class LibrarySettings:
    loan_duration: int = 14
    max_books_per_user: int = 5  # not enforced
    fine_per_day: float = 0.50
    reservation_duration: int = 3  # reservations are not modelled

    def to_dict(self) -> dict:
        return {
            "loanDuration": self.loan_duration,
            "maxBooksPerUser": self.max_books_per_user,
            "finePerDay": self.fine_per_day,
            "reservationDuration": self.reservation_duration,
        }

    @staticmethod
    def from_dict(data: dict | None) -> "LibrarySettings":
        data = data or {}
        defaults = LibrarySettings()
        try:
            fine_per_day = float(data.get("finePerDay", defaults.fine_per_day))
        except (TypeError, ValueError):
            fine_per_day = defaults.fine_per_day
        return LibrarySettings(
            loan_duration=_int(data.get("loanDuration"), defaults.loan_duration),
            max_books_per_user=_int(data.get("maxBooksPerUser"), defaults.max_books_per_user),
            fine_per_day=fine_per_day,
            reservation_duration=_int(data.get("reservationDuration"), defaults.reservation_duration),
        )
