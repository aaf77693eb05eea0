import asyncio
import logging
import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

from librahub.circulation import BorrowIntent, ReturnReport
from librahub.config import settings
from librahub.library import Library
from librahub.models import Book
from librahub.reconcile import SaveResult
from librahub.utils.ui_helpers import (
    print_accounts,
    print_book_details,
    print_books,
    print_counts,
    print_loans,
    print_metadata_results,
    print_overdue,
    print_settings,
    set_output_mode,
)

console = Console()


class LibraryManager:
    """Lazily created Library shared by the commands of one CLI run."""
    _instance: Optional[Library] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library()
        return cls._instance


def _report(result: SaveResult, success_message: str) -> None:
    if result.success:
        print(success_message)
        for warning in result.warnings:
            console.print(f"[yellow]Warning: {warning}[/]")
    else:
        print(f"Error: {result.message}")


app = typer.Typer(help="LibraHub library management CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (output mode)."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if output:
        set_output_mode(output)


@app.command("init")
def cli_init():
    """Seed branches, sample accounts, settings and a starter catalog."""
    lib = LibraryManager.get_instance()
    counts = asyncio.run(lib.initialize())
    print_counts("Library initialized", counts)


@app.command("reset")
def cli_reset(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")):
    """Drop the local catalog and seed it again."""
    if not yes and not typer.confirm("This replaces the local catalog. Continue?"):
        print("Aborted.")
        raise typer.Exit(1)
    lib = LibraryManager.get_instance()
    counts = asyncio.run(lib.reset_catalog())
    print_counts("Catalog reset", counts)


@app.command("books")
def cli_books(category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category")):
    """List the catalog, reconciled with the remote store."""
    lib = LibraryManager.get_instance()
    loaded = lib.load_books()
    if not loaded.remote_ok:
        console.print(f"[yellow]Remote store unavailable, showing local data: {loaded.error}[/]")
    books = lib.search_books("", category) if category else lib.list_books()
    print_books(books)


@app.command("find")
def cli_find(book_id: str):
    """Show one book by id."""
    lib = LibraryManager.get_instance()
    book = lib.find_book(book_id)
    if book:
        print_book_details(book)
    else:
        print(f"Book with ID {book_id} not found.")


@app.command("search")
def cli_search(
    query: str = typer.Argument(..., help="Title, author or ISBN text"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum results to show"),
):
    """Search the local catalog."""
    lib = LibraryManager.get_instance()
    books = lib.search_books(query, category)[:limit]
    if not books:
        print("No books match the criteria.")
        return
    print_books(books)


@app.command("lookup")
def cli_lookup(query: str = typer.Argument(..., help="Search text or ISBN")):
    """Search Google Books without changing the catalog."""
    lib = LibraryManager.get_instance()
    results = asyncio.run(lib.search_metadata(query))
    print_metadata_results(results)


@app.command("add")
def cli_add(
    isbn: str,
    title: Optional[str] = typer.Option(None, "--title", help="Enter the book by hand instead of looking it up"),
    author: Optional[str] = typer.Option(None, "--author"),
    category: str = typer.Option("Uncategorized", "--category"),
    copies: int = typer.Option(1, "--copies", min=1),
    branch: str = typer.Option("branch-1", "--branch"),
):
    """Add a book by ISBN through Google Books, or by hand with --title/--author."""
    lib = LibraryManager.get_instance()
    try:
        if title:
            book = Book(id=None, title=title, author=author or "", isbn=isbn, category=category,
                        copies=copies, available_copies=copies, branch=branch)
            result = lib.add_book(book)
        else:
            result = asyncio.run(lib.add_book_by_isbn(isbn, copies=copies, branch=branch))
    except LookupError as e:
        print(f"Could not find book: {e}")
        return
    except ValueError as e:
        print(f"Error: {e}")
        return
    record = result.record or {}
    _report(result, f"Successfully added: {record.get('title')} by {record.get('author')} ({record.get('id')})")


@app.command("remove")
def cli_remove(book_id: str):
    """Delete a book from the catalog."""
    lib = LibraryManager.get_instance()
    result = lib.remove_book(book_id)
    _report(result, f"Book with ID {book_id} has been removed.")


@app.command("accounts")
def cli_accounts():
    """List patrons and staff."""
    lib = LibraryManager.get_instance()
    print_accounts(lib.list_accounts())


@app.command("register")
def cli_register(
    name: str,
    email: str,
    staff: bool = typer.Option(False, "--staff", help="Register a staff member"),
    role: Optional[str] = typer.Option(None, "--role"),
    branch: str = typer.Option("branch-1", "--branch"),
):
    """Register a patron or staff member."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.register_account(name, email, is_admin=staff, role=role, branch=branch)
    except ValueError as e:
        print(f"Error: {e}")
        return
    record = result.record or {}
    number = record.get("staffId") or record.get("libraryCardNumber")
    _report(result, f"Registered {record.get('name')} ({record.get('id')}), card {number}")


@app.command("borrow")
def cli_borrow(
    book_id: str,
    account_id: str,
    purpose: str = typer.Option("personal", "--purpose", help="personal | academic | professional | other"),
    notes: str = typer.Option("", "--notes"),
):
    """Lend a book to an account."""
    lib = LibraryManager.get_instance()
    result = lib.borrow(book_id, account_id, BorrowIntent(purpose=purpose, notes=notes))
    print(result.message)
    if result.success:
        print(f"Due: {result.record.due_date[:10]}")
    else:
        raise typer.Exit(1)


@app.command("return")
def cli_return(
    book_id: str,
    account_id: str,
    condition: str = typer.Option("good", "--condition", help="excellent | good | fair | poor | damaged"),
    feedback: str = typer.Option("", "--feedback"),
):
    """Take a book back from an account."""
    lib = LibraryManager.get_instance()
    result = lib.return_book(book_id, account_id, ReturnReport(condition=condition, feedback=feedback))
    print(result.message)
    if not result.success:
        raise typer.Exit(1)


@app.command("loans")
def cli_loans(
    account_id: str,
    active: bool = typer.Option(False, "--active", help="Only loans not yet returned"),
):
    """Show an account's borrowing history."""
    lib = LibraryManager.get_instance()
    records = lib.account_history(account_id)
    if active:
        records = [r for r in records if r.active]
    print_loans(records, empty_message=f"No loans for {account_id}.")


@app.command("overdue")
def cli_overdue():
    """List active loans past their due date with the fine owed."""
    lib = LibraryManager.get_instance()
    print_overdue(lib.overdue_loans())


@app.command("fine")
def cli_fine(due_date: str = typer.Argument(..., help="ISO-8601 due date")):
    """Compute the overdue fine for a due date with the current settings."""
    lib = LibraryManager.get_instance()
    print(f"Fine: ${lib.calculate_fine(due_date)}")


@app.command("sync")
def cli_sync(account_id: Optional[str] = typer.Option(None, "--account", help="Also repair this account's loan list")):
    """Reconcile the local store with the remote store."""
    lib = LibraryManager.get_instance()
    if not lib.repository.remote_enabled:
        print("Remote sync is not configured; using local data only.")
    results = lib.sync_all()
    counts = {}
    for collection, loaded in results.items():
        counts[collection] = len(loaded.items) if loaded.remote_ok else f"local only ({loaded.error})"
    print_counts("Sync finished", counts)
    if account_id:
        result = lib.sync_account_loans(account_id)
        if result is None:
            print(f"Account {account_id} not found.")
        else:
            _report(result, f"Loan list of {account_id} is up to date.")


@app.command("migrate")
def cli_migrate():
    """Copy all local data to the remote store."""
    lib = LibraryManager.get_instance()
    try:
        report = lib.migrate_to_remote()
    except RuntimeError as e:
        print(f"Error: {e}")
        raise typer.Exit(1)
    print_counts("Migration report", {k: f"{v['migrated']} migrated, {v['failed']} failed"
                                      for k, v in report.items()})


@app.command("settings")
def cli_settings(
    loan_duration: Optional[int] = typer.Option(None, "--loan-duration", min=1),
    max_books: Optional[int] = typer.Option(None, "--max-books", min=1),
    fine_per_day: Optional[float] = typer.Option(None, "--fine-per-day", min=0),
    reservation_duration: Optional[int] = typer.Option(None, "--reservation-duration", min=1),
):
    """Show or change the library settings."""
    lib = LibraryManager.get_instance()
    changes = {
        "loanDuration": loan_duration,
        "maxBooksPerUser": max_books,
        "finePerDay": fine_per_day,
        "reservationDuration": reservation_duration,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if changes:
        result = lib.update_settings(**changes)
        _report(result, "Settings saved.")
    print_settings(lib.get_settings().to_dict())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    open_browser: bool = typer.Option(False, "--open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if open_browser:
        webbrowser.open(url)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "librahub.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if settings.debug:
        args.append("--reload")
    try:
        subprocess.run(args, check=False, env=os.environ.copy())
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
