import logging
import os
import uuid
from typing import Any, Dict, List, Optional

from library_app.cache_manager import cache_manager
from library_app.config import settings
from library_app.models import Book, utcnow
from library_app.services.supabase import (
    INVALID_TEXT_REPRESENTATION,
    NO_SINGLE_ROW,
    BackendError,
    Query,
    SupabaseClient,
)

logger = logging.getLogger(__name__)

BOOK_FIELDS = ("title", "author", "isbn", "category", "cover_image_url", "available")


def invalidate_book_cache(book_id: Optional[str] = None) -> None:
    cache_manager.invalidate_pattern("books:")
    cache_manager.invalidate_pattern("categories")
    if book_id:
        cache_manager.delete(f"book:{book_id}")


class BookCatalog:
    """Book inventory stored in the ``books`` table."""

    table = "books"

    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    # ------------------------- Reads ------------------------- #
    def list_books(self, search: Optional[str] = None, category: Optional[str] = None,
                   available: Optional[bool] = None) -> List[Book]:
        """List books ordered by title.

        ``search`` matches title or author (substring, case-insensitive),
        ``category`` and ``available`` are equality filters.
        """
        search = (search or "").strip() or None
        category = (category or "").strip() or None
        cache_key = f"books:{search}:{category}:{available}"
        cached = cache_manager.get(cache_key)
        if cached is not None:
            return list(cached)

        query = Query(self.table)
        if search:
            query.search(["title", "author"], search)
        if category:
            query.eq("category", category)
        if available is not None:
            query.eq("available", available)
        rows = self.client.db.select(query.order("title"))
        books = [Book.from_dict(row) for row in rows]
        cache_manager.set(cache_key, books)
        return list(books)

    def get_book(self, book_id: str) -> Book:
        cached = cache_manager.get(f"book:{book_id}")
        if cached is not None:
            return cached
        try:
            row = self.client.db.select(Query(self.table).eq("id", book_id), single=True)
        except BackendError as e:
            if e.code in (NO_SINGLE_ROW, INVALID_TEXT_REPRESENTATION) or e.status_code == 406:
                raise LookupError("Book not found.") from e
            raise
        book = Book.from_dict(row)
        cache_manager.set(f"book:{book_id}", book)
        return book

    def get_categories(self) -> List[str]:
        """Distinct categories of all books, sorted."""
        cached = cache_manager.get("categories")
        if cached is not None:
            return list(cached)
        rows = self.client.db.select(Query(self.table).select("category").order("category"))
        categories: List[str] = []
        for row in rows:
            category = row.get("category")
            if category and category not in categories:
                categories.append(category)
        cache_manager.set("categories", categories)
        return list(categories)

    # ------------------------- Writes ------------------------- #
    def create_book(self, title: str, author: str, isbn: str, category: str, available: bool = True,
                    cover_image_url: Optional[str] = None) -> Book:
        row = {
            "title": title.strip(),
            "author": author.strip(),
            "isbn": isbn.strip(),
            "category": category.strip(),
            "available": available,
            "cover_image_url": cover_image_url,
        }
        created = self.client.db.insert(self.table, [row])
        book = Book.from_dict(created[0])
        invalidate_book_cache()
        logger.info("Book created: %s (%s)", book.title, book.id)
        return book

    def update_book(self, book_id: str, **fields: Any) -> Book:
        """Update the given columns and stamp ``updated_at``."""
        unknown = set(fields) - set(BOOK_FIELDS)
        if unknown:
            raise ValueError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {k: v.strip() if isinstance(v, str) else v for k, v in fields.items()}
        values["updated_at"] = utcnow().isoformat()
        rows = self.client.db.update(Query(self.table).eq("id", book_id), values)
        if not rows:
            raise LookupError("Book not found.")
        book = Book.from_dict(rows[0])
        invalidate_book_cache(book_id)
        logger.info("Book updated: %s (%s)", book.title, book.id)
        return book

    def set_availability(self, book_id: str, available: bool) -> Book:
        return self.update_book(book_id, available=available)

    def delete_book(self, book_id: str) -> bool:
        self.client.db.delete(Query(self.table).eq("id", book_id))
        invalidate_book_cache(book_id)
        logger.info("Book deleted: %s", book_id)
        return True

    def upload_cover_image(self, filename: str, content: bytes, content_type: Optional[str] = None) -> str:
        """Store a cover image in the bucket and return its public URL."""
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in settings.allowed_image_extensions:
            raise ValueError(f"Unsupported image type: {ext or 'none'}")
        if not content:
            raise ValueError("Cover image is empty.")
        if len(content) > settings.max_upload_size:
            raise ValueError("Cover image is too large.")

        path = f"{settings.cover_folder}/{uuid.uuid4().hex}{ext}"
        self.client.storage.upload(settings.storage_bucket, path, content, content_type or "application/octet-stream")
        logger.info("Cover image uploaded: %s", path)
        return self.client.storage.get_public_url(settings.storage_bucket, path)
