import logging
from datetime import datetime
from typing import Callable, List

from catalog.database import Store, like_pattern, to_db_timestamp, utcnow
from catalog.errors import ConflictError, NotFoundError, ValidationError
from catalog.models import Book
from catalog.validators import validate_book, validate_id, validate_paging

logger = logging.getLogger(__name__)

BOOK_COLUMNS = (
    "id, title, author, isbn, publisher, publication_year, "
    "total_copies, available_copies, category, created_at, updated_at"
)


class BookRepository:
    """CRUD and copy-counter queries for the books table."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow, max_results: int = 1000) -> None:
        self.store = store
        self.clock = clock
        self.max_results = max_results

    # ------------------------- Core operations ------------------------- #
    def create(self, book: Book) -> int:
        """Add a new book and return its id. Duplicate ISBNs are rejected."""
        validate_book(book)
        now = to_db_timestamp(self.clock())
        with self.store.transaction() as conn:
            if book.isbn and conn.execute("SELECT 1 FROM books WHERE isbn = ?", (book.isbn,)).fetchone():
                raise ConflictError(f"Book with ISBN {book.isbn} already exists.")
            cursor = conn.execute(
                "INSERT INTO books (title, author, isbn, publisher, publication_year, "
                "total_copies, available_copies, category, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.title, book.author, book.isbn, book.publisher, book.publication_year,
                 book.total_copies, book.available_copies, book.category, now, now),
            )
            book.id = cursor.lastrowid
        logger.info("Book %s created: %s", book.id, book.title)
        return book.id

    def get(self, book_id: int) -> Book:
        row = self.store.fetch_one(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,))
        if row is None:
            raise NotFoundError(f"Book {book_id} not found.")
        return Book.from_row(row)

    def get_by_isbn(self, isbn: str) -> Book:
        row = self.store.fetch_one(f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", ((isbn or "").strip(),))
        if row is None:
            raise NotFoundError(f"Book with ISBN {isbn} not found.")
        return Book.from_row(row)

    def update(self, book: Book) -> Book:
        """Replace every mutable field of an existing book.

        available_copies must equal total_copies minus the open loans on the book.
        """
        validate_id(book.id, "book id")
        validate_book(book)
        now = to_db_timestamp(self.clock())
        with self.store.transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book.id,)).fetchone() is None:
                raise NotFoundError(f"Book {book.id} not found.")
            if book.isbn:
                clash = conn.execute(
                    "SELECT id FROM books WHERE isbn = ? AND id != ?", (book.isbn, book.id)
                ).fetchone()
                if clash:
                    raise ConflictError(f"Book with ISBN {book.isbn} already exists.")
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND is_returned = 0", (book.id,)
            ).fetchone()[0]
            if book.total_copies < open_loans:
                raise ConflictError(
                    f"Book {book.id} has {open_loans} copies on loan; total_copies cannot be {book.total_copies}."
                )
            # Copies on the shelf plus copies on loan must account for every copy
            if book.available_copies != book.total_copies - open_loans:
                raise ConflictError(
                    f"Book {book.id} has {open_loans} copies on loan; available_copies must be "
                    f"{book.total_copies - open_loans}, not {book.available_copies}."
                )
            conn.execute(
                "UPDATE books SET title = ?, author = ?, isbn = ?, publisher = ?, publication_year = ?, "
                "total_copies = ?, available_copies = ?, category = ?, updated_at = ? WHERE id = ?",
                (book.title, book.author, book.isbn, book.publisher, book.publication_year,
                 book.total_copies, book.available_copies, book.category, now, book.id),
            )
        return self.get(book.id)

    def delete(self, book_id: int) -> None:
        """Remove a book. Refused while any copy is still on loan."""
        with self.store.transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise NotFoundError(f"Book {book_id} not found.")
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND is_returned = 0", (book_id,)
            ).fetchone()[0]
            if open_loans:
                raise ConflictError(f"Book {book_id} has {open_loans} open loan(s) and cannot be deleted.")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("Book %s deleted", book_id)

    # ------------------------- Queries ------------------------- #
    def _search(self, column: str, term: str) -> List[Book]:
        rows = self.store.fetch_all(
            f"SELECT {BOOK_COLUMNS} FROM books WHERE LOWER({column}) LIKE LOWER(?) ESCAPE '\\' "
            "ORDER BY title LIMIT ?",
            (like_pattern(term or ""), self.max_results),
        )
        return [Book.from_row(row) for row in rows]

    def search_by_title(self, term: str) -> List[Book]:
        return self._search("title", term)

    def search_by_author(self, term: str) -> List[Book]:
        return self._search("author", term)

    def search_by_category(self, term: str) -> List[Book]:
        return self._search("category", term)

    def list_all(self, limit: int = 0, offset: int = 0) -> List[Book]:
        """All books ordered by id; limit=0 means no limit."""
        validate_paging(limit, offset)
        rows = self.store.fetch_all(
            f"SELECT {BOOK_COLUMNS} FROM books ORDER BY id LIMIT ? OFFSET ?",
            (limit if limit > 0 else -1, offset),
        )
        return [Book.from_row(row) for row in rows]

    def list_available(self) -> List[Book]:
        rows = self.store.fetch_all(
            f"SELECT {BOOK_COLUMNS} FROM books WHERE available_copies > 0 ORDER BY title"
        )
        return [Book.from_row(row) for row in rows]

    def popular(self, limit: int = 10) -> List[Book]:
        """Books ranked by how often they were ever borrowed, then by title."""
        if limit <= 0:
            raise ValidationError("limit must be positive.")
        columns = ", ".join(f"b.{c.strip()}" for c in BOOK_COLUMNS.split(","))
        rows = self.store.fetch_all(
            f"SELECT {columns} FROM books b LEFT JOIN loans l ON b.id = l.book_id "
            "GROUP BY b.id ORDER BY COUNT(l.id) DESC, b.title ASC LIMIT ?",
            (limit,),
        )
        return [Book.from_row(row) for row in rows]

    def count(self) -> int:
        return self.store.scalar("SELECT COUNT(*) FROM books")
