import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import httpx

from librahub.config import settings
from librahub.services.cache_manager import cached
from librahub.services.http_client import HTTPClient, get_http_client


logger = logging.getLogger(__name__)


@dataclass
class BookMetadata:
    """Normalized metadata for pre-filling a catalog entry."""
    title: str = "Unknown Title"
    author: str = "Unknown Author"
    isbn: str = "Unknown ISBN"
    description: str = "No description available."
    published_year: str = "Unknown"
    cover_image: Optional[str] = None
    publisher: str = "Unknown Publisher"
    pages: int = 0
    language: str = "en"
    category: str = "Uncategorized"
    volume_id: Optional[str] = None

    def to_book_fields(self) -> Dict[str, Any]:
        """Fields in the stored book document format."""
        return {
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "description": self.description,
            "publishedYear": self.published_year,
            "coverImage": self.cover_image,
            "publisher": self.publisher,
            "pages": self.pages,
            "language": self.language,
            "category": self.category,
        }


class GoogleBooksAPIError(Exception):
    """Raised when the Google Books API cannot be queried"""
    pass


class GoogleBooksService:
    """Read-only lookups against the Google Books volumes API.

    Public methods never raise: failures are logged and degrade to an empty
    result so catalog work is never blocked by the metadata source.
    """

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[HTTPClient] = None,
                 enabled: Optional[bool] = None):
        self.api_key = api_key or settings.google_books_api_key
        self.base_url = "https://www.googleapis.com/books/v1"
        self.timeout = settings.google_books_timeout
        self.enabled = settings.enable_google_books if enabled is None else enabled
        self._http = http_client

    @property
    def http(self) -> HTTPClient:
        return self._http or get_http_client()

    @cached(ttl_seconds=settings.cache_ttl, key_prefix="google_books", skip_args=1)
    async def _fetch_volumes(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET /volumes. Raises GoogleBooksAPIError so failures are never cached."""
        params = dict(params)
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = await self.http.get(f"{self.base_url}/volumes", params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise GoogleBooksAPIError(f"request timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise GoogleBooksAPIError(f"request failed: {e}") from e

        if response.status_code != 200:
            raise GoogleBooksAPIError(f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise GoogleBooksAPIError("response is not JSON") from e

    @staticmethod
    def _https(url: Optional[str]) -> Optional[str]:
        if url and url.startswith("http:"):
            return "https:" + url[len("http:"):]
        return url

    def _parse_volume(self, item: Dict[str, Any], isbn: Optional[str] = None) -> BookMetadata:
        volume_info = item.get("volumeInfo", {}) or {}

        if isbn is None:
            identifiers = volume_info.get("industryIdentifiers") or []
            isbn = next(
                (i.get("identifier") for i in identifiers if i.get("type") == "ISBN_13"),
                None,
            )
            if not isbn and identifiers:
                isbn = identifiers[0].get("identifier")

        image_links = volume_info.get("imageLinks") or {}
        published_date = volume_info.get("publishedDate")
        authors = volume_info.get("authors")
        categories = volume_info.get("categories")

        return BookMetadata(
            title=volume_info.get("title") or "Unknown Title",
            author=", ".join(authors) if authors else "Unknown Author",
            isbn=isbn or "Unknown ISBN",
            description=volume_info.get("description") or "No description available.",
            published_year=published_date[:4] if published_date else "Unknown",
            cover_image=self._https(image_links.get("thumbnail")),
            publisher=volume_info.get("publisher") or "Unknown Publisher",
            pages=volume_info.get("pageCount") or 0,
            language=volume_info.get("language") or "en",
            category=categories[0] if categories else "Uncategorized",
            volume_id=item.get("id"),
        )

    async def search(self, query: str, max_results: int = 10) -> List[BookMetadata]:
        """
        Search volumes by free text.

        Args:
            query: Search text (title, author, ISBN)
            max_results: At most this many results (the API caps at 40)

        Returns:
            List of BookMetadata, empty on any failure
        """
        if not query or not query.strip():
            logger.warning("Empty search query provided")
            return []
        if not self.enabled:
            logger.info("Google Books lookups are disabled")
            return []

        params = {"q": query.strip(), "maxResults": min(max_results, 40)}
        try:
            data = await self._fetch_volumes(params)
        except GoogleBooksAPIError as e:
            logger.error(f"Google Books search failed for '{query}': {e}")
            return []

        items = data.get("items") or []
        books = [self._parse_volume(item) for item in items]
        logger.info(f"Found {len(books)} books for query: {query}")
        return books

    async def lookup_by_isbn(self, isbn: str) -> Optional[BookMetadata]:
        """
        Fetch the first volume matching an ISBN.

        Returns:
            BookMetadata or None if not found or on failure
        """
        if not isbn or not isbn.strip():
            logger.warning("Empty ISBN provided")
            return None
        if not self.enabled:
            logger.info("Google Books lookups are disabled")
            return None

        clean_isbn = ''.join(c for c in isbn if c.isalnum())
        try:
            data = await self._fetch_volumes({"q": f"isbn:{clean_isbn}"})
        except GoogleBooksAPIError as e:
            logger.error(f"Google Books ISBN lookup failed for {clean_isbn}: {e}")
            return None

        items = data.get("items") or []
        if not items:
            logger.info(f"Book not found in Google Books: ISBN {clean_isbn}")
            return None

        book = self._parse_volume(items[0], isbn=clean_isbn)
        logger.info(f"Book found via Google Books: {book.title} by {book.author}")
        return book
