import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRAHUB_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author (available/copies)' lines, or 'No books in library.'
    - json: array of book documents
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category")
        table.add_column("Available", justify="right")
        table.add_column("Rating", justify="right")
        for b in books:
            table.add_row(b.id or "", b.title, b.author, b.category,
                          f"{b.available_copies}/{b.copies}", f"{b.average_rating:.1f}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} ({b.available_copies}/{b.copies} available)")


def print_book_details(book: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(book.to_dict())
        return

    lines = [
        f"Title: {book.title}",
        f"Author: {book.author}",
        f"ISBN: {book.isbn}",
        f"Category: {book.category}",
        f"Copies: {book.available_copies}/{book.copies} available",
        f"Rating: {book.average_rating:.1f}",
    ]
    if book.borrowed_by:
        lines.append(f"Borrowed by: {book.borrowed_by} (due {book.due_date})")
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="📖 Book Found", border_style="blue"))
    else:
        print("Book Found")
        for line in lines:
            print(line)


def print_metadata_results(results: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if not results:
        print("No results from Google Books.")
        return
    if mode == "json":
        _print_json(results)
    elif mode == "rich":
        table = Table(title="🔎 Google Books", header_style="bold cyan")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Year")
        for r in results:
            table.add_row(r["isbn"], r["title"], r["author"], r["publishedYear"])
        _console.print(table)
    else:
        for r in results:
            print(f"{r['isbn']} - {r['title']} by {r['author']} ({r['publishedYear']})")


def print_accounts(accounts: List[Any]) -> None:
    mode = get_output_mode()
    if not accounts:
        print("No accounts.")
        return
    if mode == "json":
        _print_json([a.to_dict() for a in accounts])
    elif mode == "rich":
        table = Table(title="👤 Accounts", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Type")
        table.add_column("Card / Staff ID")
        table.add_column("Books", justify="right")
        for a in accounts:
            table.add_row(a.id or "", a.name, a.email, "staff" if a.is_admin else "patron",
                          a.staff_id or a.library_card_number or "", str(len(a.borrowed_books)))
        _console.print(table)
    else:
        for a in accounts:
            kind = "staff" if a.is_admin else "patron"
            print(f"{a.id} - {a.name} <{a.email}> [{kind}]")


def print_loans(records: List[Any], empty_message: str = "No loans.") -> None:
    mode = get_output_mode()
    if not records:
        print(empty_message)
        return
    if mode == "json":
        _print_json([r.to_dict() for r in records])
    elif mode == "rich":
        table = Table(title="🔁 Loans", header_style="bold cyan")
        table.add_column("Record", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Account")
        table.add_column("Borrowed")
        table.add_column("Due")
        table.add_column("Status")
        for r in records:
            table.add_row(r.id, r.book_id, r.user_id, r.borrow_date[:10], r.due_date[:10], r.status)
        _console.print(table)
    else:
        for r in records:
            print(f"{r.id}: {r.book_id} -> {r.user_id} borrowed {r.borrow_date[:10]}, "
                  f"due {r.due_date[:10]} [{r.status}]")


def print_overdue(entries: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if not entries:
        print("No overdue loans.")
        return
    if mode == "json":
        _print_json([{**e["record"].to_dict(), "fine": str(e["fine"])} for e in entries])
    elif mode == "rich":
        table = Table(title="⏰ Overdue", header_style="bold red")
        table.add_column("Book")
        table.add_column("Account")
        table.add_column("Due")
        table.add_column("Fine", justify="right")
        for e in entries:
            r = e["record"]
            table.add_row(r.book_id, r.user_id, r.due_date[:10], f"${e['fine']}")
        _console.print(table)
    else:
        for e in entries:
            r = e["record"]
            print(f"{r.book_id} held by {r.user_id}, due {r.due_date[:10]}, fine ${e['fine']}")


def print_settings(values: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(values)
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in values.items())
        _console.print(Panel.fit(content, title="⚙️ Settings", border_style="blue"))
    else:
        for k, v in values.items():
            print(f"{k}: {v}")


def print_counts(title: str, counts: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json(counts)
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in counts.items())
        _console.print(Panel.fit(content, title=title, border_style="green"))
    else:
        print(title)
        for k, v in counts.items():
            print(f"{k}: {v}")
