"""Live checks against the Google Books API. Run with ``pytest -m integration``."""

import asyncio

import pytest

from librahub.services.google_books_service import GoogleBooksService

pytestmark = pytest.mark.integration


def test_lookup_known_isbn():
    service = GoogleBooksService(enabled=True)

    book = asyncio.run(service.lookup_by_isbn("9780441172719"))

    assert book is not None
    assert "Dune" in book.title
    assert book.isbn == "9780441172719"


def test_search_returns_results():
    service = GoogleBooksService(enabled=True)

    results = asyncio.run(service.search("Pride and Prejudice", max_results=5))

    assert 0 < len(results) <= 5
