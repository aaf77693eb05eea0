import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from librahub.library import Library
from librahub.main import LibraryManager, app
from librahub.models import Book

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_library(lib, monkeypatch):
    monkeypatch.setattr(LibraryManager, "_instance", lib)
    return lib


@pytest.fixture
def stocked(lib):
    book_id = lib.add_book(Book(id=None, title="Dune", author="Frank Herbert", isbn="9780441172719",
                                category="Fiction", copies=1)).record["id"]
    account_id = lib.register_account("Jane Doe", "jane@example.com").record["id"]
    return book_id, account_id


def test_books_empty():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_books_json_output(stocked):
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["title"] == "Dune"


def test_add_by_hand():
    result = runner.invoke(app, ["add", "9780441172719", "--title", "Dune", "--author", "Frank Herbert",
                                 "--copies", "2"])
    assert result.exit_code == 0
    assert "Successfully added: Dune by Frank Herbert" in result.stdout


def test_add_by_isbn_not_found(monkeypatch):
    monkeypatch.setattr(Library, "add_book_by_isbn", AsyncMock(side_effect=LookupError("Book not found.")))

    result = runner.invoke(app, ["add", "9780306406157"])

    assert result.exit_code == 0
    assert "Could not find book: Book not found." in result.stdout


def test_add_invalid_isbn():
    result = runner.invoke(app, ["add", "12345"])
    assert "Error: Invalid ISBN format." in result.stdout


def test_find(stocked):
    book_id, _ = stocked
    result = runner.invoke(app, ["find", book_id])
    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Title: Dune" in result.stdout
    assert "Copies: 1/1 available" in result.stdout


def test_find_missing():
    result = runner.invoke(app, ["find", "book-404"])
    assert "Book with ID book-404 not found." in result.stdout


def test_search(stocked):
    assert "Dune by Frank Herbert" in runner.invoke(app, ["search", "herbert"]).stdout
    assert "No books match the criteria." in runner.invoke(app, ["search", "tolstoy"]).stdout


def test_register_patron():
    result = runner.invoke(app, ["register", "Jane Doe", "jane@example.com"])
    assert result.exit_code == 0
    assert "Registered Jane Doe" in result.stdout
    assert "LIB-" in result.stdout


def test_borrow_and_return(stocked):
    book_id, account_id = stocked

    borrowed = runner.invoke(app, ["borrow", book_id, account_id, "--purpose", "academic"])
    assert borrowed.exit_code == 0
    assert "Book borrowed successfully!" in borrowed.stdout

    again = runner.invoke(app, ["borrow", book_id, account_id])
    assert again.exit_code == 1

    loans = runner.invoke(app, ["loans", account_id, "--active"])
    assert book_id in loans.stdout

    returned = runner.invoke(app, ["return", book_id, account_id, "--condition", "good"])
    assert returned.exit_code == 0
    assert "Book returned successfully!" in returned.stdout


def test_borrow_unknown_account(stocked):
    book_id, _ = stocked
    result = runner.invoke(app, ["borrow", book_id, "user-404"])
    assert result.exit_code == 1
    assert "Account user-404 not found." in result.stdout


def test_overdue_empty():
    assert "No overdue loans." in runner.invoke(app, ["overdue"]).stdout


def test_fine():
    due = (datetime.now(timezone.utc) - timedelta(days=10)).isoformat()
    result = runner.invoke(app, ["fine", due])
    assert "Fine: $5.00" in result.stdout


def test_settings_update():
    result = runner.invoke(app, ["settings", "--loan-duration", "21"])
    assert result.exit_code == 0
    assert "loanDuration: 21" in result.stdout


def test_init():
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert "branches: 3" in result.stdout


def test_migrate_without_remote():
    result = runner.invoke(app, ["migrate"])
    assert result.exit_code == 1
    assert "No remote store is configured." in result.stdout


def test_sync_local_only(stocked):
    _, account_id = stocked
    result = runner.invoke(app, ["sync", "--account", account_id])
    assert result.exit_code == 0
    assert "Remote sync is not configured" in result.stdout
    assert "Already up to date." not in result.stdout
    assert f"Loan list of {account_id} is up to date." in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "librahub.api:app" in args
    assert "8123" in args
