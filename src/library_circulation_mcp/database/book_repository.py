"""
Book repository implementation for the Library Circulation MCP Server.

The catalog is owned outside the circulation core. This repository gives the
core what it consumes: book lookup and atomic moves of the ``available``
counter. Creation exists so seed data and tests can populate the catalog.

Counter moves are compare-and-swap UPDATE statements: the guard lives in the
WHERE clause, so two transactions can never both take the last copy.
"""

import logging

from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..models.book import Book as BookModel
from .repository import BaseRepository, ConflictError, generate_id, safe_query
from .schema import Book as BookDB

logger = logging.getLogger(__name__)


class BookCreateSchema(BaseModel):
    """Schema for adding a book to the catalog."""

    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    isbn: str | None = None
    category: str | None = None
    quantity: int = Field(default=1, ge=0)


class BookRepository(BaseRepository[BookDB, BookCreateSchema, BookModel]):
    """Repository for catalog reads and copy counter updates."""

    @property
    def model_class(self):
        return BookDB

    @property
    def response_schema(self):
        return BookModel

    def create(self, data: BookCreateSchema) -> BookModel:
        """
        Add a book with every copy available.

        Raises:
            ConflictError: If the ISBN is already catalogued
        """
        isbn = data.isbn.replace("-", "") if data.isbn else None
        book = BookDB(
            id=generate_id("book"),
            title=data.title,
            author=data.author,
            isbn=isbn,
            category=data.category,
            quantity=data.quantity,
            available=data.quantity,
        )
        try:
            with self.session.begin_nested():
                self.session.add(book)
                self.session.flush()
        except IntegrityError as e:
            raise ConflictError(f"Book with ISBN {isbn} already exists") from e

        logger.debug("Catalogued book %s (%d copies)", book.id, book.quantity)
        return self._to_response_model(book)

    def get_by_isbn(self, isbn: str) -> BookModel | None:
        """Look a book up by ISBN (hyphens ignored)."""
        normalized = isbn.replace("-", "")
        book = safe_query(
            self.session,
            lambda s: s.execute(select(BookDB).where(BookDB.isbn == normalized)).scalar_one_or_none(),
            "Failed to get book by ISBN",
        )
        return self._to_response_model(book) if book else None

    def take_copy(self, book_id: str) -> bool:
        """
        Decrement ``available`` if a copy is free.

        Returns:
            True if a copy was taken, False if none were available
        """
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(BookDB)
                .where(BookDB.id == book_id, BookDB.available > 0)
                .values(available=BookDB.available - 1)
                .execution_options(synchronize_session="fetch")
            ),
            "Failed to take a copy",
        )
        return result.rowcount == 1

    def release_copy(self, book_id: str) -> bool:
        """
        Increment ``available`` without letting it pass ``quantity``.

        Returns:
            True if the counter moved, False if it was already at quantity
        """
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(BookDB)
                .where(BookDB.id == book_id, BookDB.available < BookDB.quantity)
                .values(available=BookDB.available + 1)
                .execution_options(synchronize_session="fetch")
            ),
            "Failed to release a copy",
        )
        return result.rowcount == 1

    def set_available(self, book_id: str, available: int) -> None:
        """Overwrite the counter; used only when reconciling against the ledger."""
        safe_query(
            self.session,
            lambda s: s.execute(
                update(BookDB)
                .where(BookDB.id == book_id)
                .values(available=available)
                .execution_options(synchronize_session="fetch")
            ),
            "Failed to reset available copies",
        )

    def copy_totals(self) -> tuple[int, int]:
        """
        Sum copies across the catalog.

        Returns:
            (total copies owned, copies available)
        """
        row = safe_query(
            self.session,
            lambda s: s.execute(
                select(
                    func.coalesce(func.sum(BookDB.quantity), 0),
                    func.coalesce(func.sum(BookDB.available), 0),
                )
            ).one(),
            "Failed to sum copies",
        )
        return int(row[0]), int(row[1])

    def count_categories(self) -> int:
        """Number of distinct non-empty categories in the catalog."""
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count(func.distinct(BookDB.category))).where(
                        BookDB.category.is_not(None)
                    )
                ).scalar(),
                "Failed to count categories",
            )
            or 0
        )
