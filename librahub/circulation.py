"""Borrow and return transitions.

Active borrowing records are the source of truth for who holds a book. The
book's ``borrowedBy``/``dueDate`` fields are recomputed from them on every
transition and never set on their own.
"""

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional, Union

from librahub import database
from librahub.models import BORROWED, RETURNED, Account, Book, BorrowingRecord, LibrarySettings
from librahub.reconcile import SyncedRepository
from librahub.utils.validators import validate_borrow_intent, validate_return_report

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_due_date(loan_duration: int, now: Optional[datetime] = None) -> str:
    """Due timestamp ``loan_duration`` days from now, as ISO-8601 UTC."""
    now = now or utc_now()
    return (now + timedelta(days=loan_duration)).isoformat()


def days_overdue(due_date: Union[str, datetime, None], today: Optional[date] = None) -> int:
    """Whole calendar days past the due date; 0 when not overdue."""
    due = parse_timestamp(due_date)
    if due is None:
        return 0
    today = today or utc_now().date()
    return max(0, (today - due.date()).days)


def calculate_fine(due_date: Union[str, datetime, None], fine_per_day: float,
                   today: Optional[date] = None) -> Decimal:
    """Informational overdue fine: ceil(days overdue) * fine per day, to the cent."""
    overdue = days_overdue(due_date, today)
    if overdue <= 0:
        return Decimal("0.00")
    amount = Decimal(math.ceil(overdue)) * Decimal(str(fine_per_day))
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def project_loans(book: Book, records: List[BorrowingRecord]) -> Book:
    """Set borrowedBy/dueDate from the most recent active record of this book."""
    active = [r for r in records if r.book_id == book.id and r.active]
    if active:
        latest = max(active, key=lambda r: r.borrow_date)
        book.borrowed_by = latest.user_id
        book.due_date = latest.due_date
    else:
        book.borrowed_by = None
        book.due_date = None
    return book


@dataclass
class BorrowIntent:
    purpose: str = "personal"
    notes: str = ""
    agreement: bool = True


@dataclass
class ReturnReport:
    condition: str = "good"
    feedback: str = ""
    confirmed: bool = True


@dataclass
class CirculationResult:
    success: bool
    message: str
    book: Optional[Book] = None
    account: Optional[Account] = None
    record: Optional[BorrowingRecord] = None
    fine: Decimal = Decimal("0.00")
    warnings: List[str] = field(default_factory=list)


class Circulation:
    """Borrow/return state machine over an injected repository."""

    def __init__(self, repository: SyncedRepository, clock: Clock = utc_now):
        self.repository = repository
        self.clock = clock
        self._lock = threading.Lock()

    # ----------------- reads -----------------

    def settings(self) -> LibrarySettings:
        return LibrarySettings.from_dict(self.repository.local.get(database.SETTINGS, {}))

    def records(self) -> List[BorrowingRecord]:
        return [BorrowingRecord.from_dict(r) for r in self.repository.local_items(database.BORROWING_RECORDS)]

    def active_record(self, book_id: str, account_id: str) -> Optional[BorrowingRecord]:
        matches = [r for r in self.records()
                   if r.book_id == book_id and r.user_id == account_id and r.active]
        if not matches:
            return None
        return max(matches, key=lambda r: r.borrow_date)

    def active_records(self, account_id: str) -> List[BorrowingRecord]:
        return [r for r in self.records() if r.user_id == account_id and r.active]

    def calculate_fine(self, due_date: Union[str, datetime, None]) -> Decimal:
        return calculate_fine(due_date, self.settings().fine_per_day, self.clock().date())

    # ----------------- transitions -----------------

    def _fresh_book(self, book: Union[Book, str]) -> Optional[Book]:
        book_id = book if isinstance(book, str) else book.id
        stored = self.repository.find(database.BOOKS, book_id)
        if stored is None:
            return None
        return Book.from_dict(self.repository.refresh(database.BOOKS, stored))

    def _fresh_account(self, account: Account) -> Account:
        # Re-read before editing borrowedBooks; the account write itself is unconditional.
        stored = self.repository.find(database.USERS, account.id) or account.to_dict()
        return Account.from_dict(self.repository.refresh(database.USERS, stored))

    def borrow(self, book: Union[Book, str], account: Account,
               intent: Optional[BorrowIntent] = None) -> CirculationResult:
        """Lend one copy of ``book`` to ``account``.

        Every precondition is checked before the first write. Only a conflicting
        concurrent update of the book aborts the transition once writing starts;
        later remote failures are returned as warnings and the local changes stay.
        """
        intent = intent or BorrowIntent()
        try:
            validate_borrow_intent(intent.purpose, intent.agreement)
        except ValueError as e:
            return CirculationResult(success=False, message=str(e))

        with self._lock:
            current = self._fresh_book(book)
            if current is None:
                return CirculationResult(success=False, message="Book not found.")
            if current.available_copies <= 0:
                return CirculationResult(success=False, message="No copies available.", book=current)
            if self.active_record(current.id, account.id) is not None:
                return CirculationResult(success=False, book=current,
                                         message="You already have this book on loan.")

            now = self.clock()
            due_date = calculate_due_date(self.settings().loan_duration, now)
            record = BorrowingRecord(
                id=f"record-{uuid.uuid4().hex[:12]}",
                book_id=current.id,
                user_id=account.id,
                borrow_date=now.isoformat(),
                due_date=due_date,
                status=BORROWED,
                purpose=intent.purpose,
                notes=intent.notes,
            )

            current.available_copies -= 1
            current.updated_at = now.isoformat()
            project_loans(current, self.records() + [record])

            warnings = []
            saved = self.repository.save(database.BOOKS, current.to_dict(), check_conflict=True)
            if not saved.success:
                return CirculationResult(success=False, message=saved.message, book=current)
            warnings.extend(saved.warnings)
            current = Book.from_dict(saved.record)

            saved_record = self.repository.save(database.BORROWING_RECORDS, record.to_dict())
            warnings.extend(saved_record.warnings)
            record = BorrowingRecord.from_dict(saved_record.record)

            holder = self._fresh_account(account)
            if current.id not in holder.borrowed_books:
                holder.borrowed_books.append(current.id)
            saved_account = self.repository.save(database.USERS, holder.to_dict())
            warnings.extend(saved_account.warnings)
            holder = Account.from_dict(saved_account.record)

        logger.info(f"{holder.id} borrowed {current.id}, due {due_date}")
        message = "Book borrowed successfully!"
        if warnings:
            message += " Some changes were only saved locally."
        return CirculationResult(success=True, message=message, book=current, account=holder,
                                 record=record, warnings=warnings)

    def return_book(self, book: Union[Book, str], account: Account,
                    report: Optional[ReturnReport] = None) -> CirculationResult:
        """Take back a copy of ``book`` from ``account`` and close its loan record.

        Without an active record the return is still accepted when the book or
        the account says the account holds it (data written before loans were
        recorded); the fine then uses the book's own due date.
        """
        report = report or ReturnReport()
        try:
            validate_return_report(report.condition, report.feedback, report.confirmed)
        except ValueError as e:
            return CirculationResult(success=False, message=str(e))

        with self._lock:
            current = self._fresh_book(book)
            if current is None:
                return CirculationResult(success=False, message="Book not found.")
            holder = self._fresh_account(account)

            record = self.active_record(current.id, holder.id)
            if record is None:
                legacy_loan = current.borrowed_by == holder.id or current.id in holder.borrowed_books
                if not legacy_loan:
                    return CirculationResult(success=False, book=current, account=holder,
                                             message="This book is not on loan to you.")
                logger.warning(f"No active loan record for {current.id}/{holder.id}, using book fields")

            now = self.clock()
            due_date = record.due_date if record else current.due_date
            fine = calculate_fine(due_date, self.settings().fine_per_day, now.date())

            if record is not None:
                record.status = RETURNED
                record.return_date = now.isoformat()
                record.condition = report.condition
                record.feedback = report.feedback
                record.fine = float(fine)

            if current.available_copies >= current.copies:
                logger.warning(f"{current.id} already has all {current.copies} copies on the shelf")
            current.available_copies = min(current.copies, current.available_copies + 1)
            current.updated_at = now.isoformat()
            others = [r for r in self.records() if record is None or r.id != record.id]
            project_loans(current, others + ([record] if record else []))

            warnings = []
            saved_book = self.repository.save(database.BOOKS, current.to_dict(), check_conflict=True)
            if not saved_book.success:
                return CirculationResult(success=False, message=saved_book.message, book=current)
            warnings.extend(saved_book.warnings)
            current = Book.from_dict(saved_book.record)

            if record is not None:
                saved_record = self.repository.save(database.BORROWING_RECORDS, record.to_dict())
                warnings.extend(saved_record.warnings)
                record = BorrowingRecord.from_dict(saved_record.record)

            holder = self._fresh_account(holder)
            holder.borrowed_books = [b for b in holder.borrowed_books if b != current.id]
            saved_account = self.repository.save(database.USERS, holder.to_dict())
            warnings.extend(saved_account.warnings)
            holder = Account.from_dict(saved_account.record)

        logger.info(f"{holder.id} returned {current.id}, fine {fine}")
        message = "Book returned successfully!"
        if fine > 0:
            message += f" An overdue fine of ${fine} applies."
        if warnings:
            message += " Some changes were only saved locally."
        return CirculationResult(success=True, message=message, book=current, account=holder,
                                 record=record, fine=fine, warnings=warnings)
