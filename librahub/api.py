from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from librahub import database
from librahub.circulation import BorrowIntent, CirculationResult, ReturnReport
from librahub.config import settings
from librahub.library import Library
from librahub.models import Book
from librahub.reconcile import SaveResult
from librahub.services.http_client import cleanup_http_client

_library: Optional[Library] = None


def get_library() -> Library:
    """Process-wide Library; tests override this dependency."""
    global _library
    if _library is None:
        _library = Library()
    return _library


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        await cleanup_http_client()


app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key of mutating requests."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class BookCreateModel(BaseModel):
    isbn: str = Field(..., description="Looked up in Google Books unless title and author are given")
    title: Optional[str] = None
    author: Optional[str] = None
    category: str = "Uncategorized"
    description: str = ""
    copies: int = Field(default=1, ge=1)
    branch: str = "branch-1"


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    copies: Optional[int] = Field(default=None, ge=1)
    branch: Optional[str] = None


class AccountCreateModel(BaseModel):
    name: str
    email: str
    is_admin: bool = False
    role: Optional[str] = None
    branch: str = "branch-1"
    phone: str = ""
    address: str = ""


class BorrowModel(BaseModel):
    book_id: str
    account_id: str
    purpose: str = "personal"
    notes: str = ""
    agreement: bool = True


class ReturnModel(BaseModel):
    book_id: str
    account_id: str
    condition: str = "good"
    feedback: str = ""
    confirmed: bool = True


class SettingsModel(BaseModel):
    loanDuration: Optional[int] = Field(default=None, ge=1)
    maxBooksPerUser: Optional[int] = Field(default=None, ge=1)
    finePerDay: Optional[float] = Field(default=None, ge=0)
    reservationDuration: Optional[int] = Field(default=None, ge=1)


# --- Helpers ---
def _save_response(result: SaveResult) -> Dict[str, Any]:
    if not result.success:
        raise HTTPException(status_code=409 if result.conflict else 400, detail=result.message)
    return {"record": result.record, "remote_synced": result.remote_synced, "warnings": result.warnings}


def _circulation_response(result: CirculationResult) -> Dict[str, Any]:
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return {
        "message": result.message,
        "book": result.book.to_dict() if result.book else None,
        "record": result.record.to_dict() if result.record else None,
        "fine": str(result.fine),
        "warnings": result.warnings,
    }


# --- Health ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_books": len(library.repository.local_items(database.BOOKS)),
        "remote_sync": library.repository.remote_enabled,
        "google_books": library.metadata.enabled,
    }


# --- Books ---
@app.get("/books")
def list_books(
    q: Optional[str] = Query(None, description="Title, author or ISBN text"),
    category: Optional[str] = None,
    library: Library = Depends(get_library),
) -> List[Dict[str, Any]]:
    if q or category:
        books = library.search_books(q or "", category)
    else:
        books = library.list_books()
    return [b.to_dict() for b in books]


@app.get("/books/categories")
def list_categories(library: Library = Depends(get_library)) -> List[str]:
    return library.categories()


@app.get("/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library)):
    book = library.find_book(book_id)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book.to_dict()


@app.post("/books", dependencies=[Depends(get_api_key)])
async def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    """Add a book by hand, or by ISBN through Google Books when title/author are missing."""
    try:
        if payload.title and payload.author:
            book = Book(id=None, title=payload.title, author=payload.author, isbn=payload.isbn,
                        category=payload.category, description=payload.description,
                        copies=payload.copies, available_copies=payload.copies, branch=payload.branch)
            result = library.add_book(book)
        else:
            result = await library.add_book_by_isbn(payload.isbn, copies=payload.copies, branch=payload.branch)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _save_response(result)


@app.put("/books/{book_id}", dependencies=[Depends(get_api_key)])
def update_book(book_id: str, update: BookUpdateModel, library: Library = Depends(get_library)):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")
    try:
        result = library.update_book(book_id, **changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _save_response(result)


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str, library: Library = Depends(get_library)):
    if library.find_book(book_id) is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _save_response(library.remove_book(book_id))


# --- Metadata ---
@app.get("/metadata/search")
async def metadata_search(q: str = Query(..., min_length=1), library: Library = Depends(get_library)):
    return await library.search_metadata(q)


@app.get("/metadata/isbn/{isbn}")
async def metadata_isbn(isbn: str, library: Library = Depends(get_library)):
    metadata = await library.metadata.lookup_by_isbn(isbn)
    if metadata is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return metadata.to_book_fields()


# --- Accounts ---
@app.get("/accounts")
def list_accounts(library: Library = Depends(get_library)):
    return [a.to_dict() for a in library.list_accounts()]


@app.post("/accounts", dependencies=[Depends(get_api_key)])
def register_account(payload: AccountCreateModel, library: Library = Depends(get_library)):
    try:
        result = library.register_account(
            payload.name, payload.email, is_admin=payload.is_admin, role=payload.role,
            branch=payload.branch, phone=payload.phone, address=payload.address,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _save_response(result)


@app.delete("/accounts/{account_id}", dependencies=[Depends(get_api_key)])
def delete_account(account_id: str, library: Library = Depends(get_library)):
    if library.find_account(account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return _save_response(library.delete_account(account_id))


@app.get("/accounts/{account_id}/loans")
def account_loans(account_id: str, active: bool = False, library: Library = Depends(get_library)):
    records = library.account_history(account_id)
    if active:
        records = [r for r in records if r.active]
    return [r.to_dict() for r in records]


@app.get("/accounts/{account_id}/books")
def account_books(account_id: str, library: Library = Depends(get_library)):
    return [b.to_dict() for b in library.borrowed_books(account_id)]


# --- Loans ---
@app.post("/loans/borrow", dependencies=[Depends(get_api_key)])
def borrow(payload: BorrowModel, library: Library = Depends(get_library)):
    intent = BorrowIntent(purpose=payload.purpose, notes=payload.notes, agreement=payload.agreement)
    return _circulation_response(library.borrow(payload.book_id, payload.account_id, intent))


@app.post("/loans/return", dependencies=[Depends(get_api_key)])
def return_book(payload: ReturnModel, library: Library = Depends(get_library)):
    report = ReturnReport(condition=payload.condition, feedback=payload.feedback, confirmed=payload.confirmed)
    return _circulation_response(library.return_book(payload.book_id, payload.account_id, report))


@app.get("/loans/overdue")
def overdue(library: Library = Depends(get_library)):
    return [{**e["record"].to_dict(), "fine": str(e["fine"])} for e in library.overdue_loans()]


# --- Settings ---
@app.get("/settings")
def get_settings(library: Library = Depends(get_library)):
    return library.get_settings().to_dict()


@app.put("/settings", dependencies=[Depends(get_api_key)])
def update_settings(payload: SettingsModel, library: Library = Depends(get_library)):
    changes = payload.model_dump(exclude_none=True)
    return _save_response(library.update_settings(**changes))


# --- Sync ---
@app.post("/sync/migrate", dependencies=[Depends(get_api_key)])
def migrate(library: Library = Depends(get_library)):
    try:
        return library.migrate_to_remote()
    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))
