import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence

from catalog.errors import ConflictError, StorageError, TransientStorageError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE,
        publisher TEXT,
        publication_year INTEGER,
        total_copies INTEGER NOT NULL DEFAULT 1,
        available_copies INTEGER NOT NULL DEFAULT 1,
        category TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CHECK (total_copies >= 0),
        CHECK (available_copies >= 0 AND available_copies <= total_copies)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        phone TEXT,
        address TEXT,
        registration_date TIMESTAMP NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL,
        member_id INTEGER NOT NULL,
        loan_date TIMESTAMP NOT NULL,
        due_date TIMESTAMP NOT NULL,
        return_date TIMESTAMP NULL,
        is_returned INTEGER NOT NULL DEFAULT 0,
        renewal_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        CHECK (renewal_count >= 0),
        CHECK ((is_returned = 0 AND return_date IS NULL) OR (is_returned = 1 AND return_date IS NOT NULL)),
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
        FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn)",
    "CREATE INDEX IF NOT EXISTS idx_members_email ON members(email)",
    "CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_loans_member_id ON loans(member_id)",
    "CREATE INDEX IF NOT EXISTS idx_loans_return_date ON loans(return_date)",
]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.strptime(str(value)[:19], TIMESTAMP_FORMAT)
    except ValueError as e:
        raise StorageError(f"Malformed timestamp in store: {value!r}") from e


def like_pattern(term: str) -> str:
    """Wrap a user search term for a substring LIKE match with ESCAPE '\\'."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def translate_error(exc: sqlite3.Error) -> Exception:
    """Map a sqlite3 failure onto the catalog's error taxonomy."""
    message = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        if "UNIQUE" in message:
            return ConflictError(message)
        return StorageError(f"Integrity violation: {message}")
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return TransientStorageError(message)
    return StorageError(message)


class Store:
    """SQLite-backed record store for books, members and loans.

    A fresh connection is opened per operation, so a single Store can be
    shared between threads. Transactions are explicit: connections run in
    autocommit mode and `transaction()` issues BEGIN IMMEDIATE, which takes
    the write lock up front and serializes read-then-write sequences.
    """

    def __init__(self, db_file: str, busy_timeout: float = 5.0) -> None:
        self.db_file = db_file
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_file,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
            # WAL lets readers proceed while a borrow or return holds the write lock
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            raise translate_error(e) from e
        return conn

    def initialize(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        directory = os.path.dirname(os.path.abspath(self.db_file))
        os.makedirs(directory, exist_ok=True)
        with self.transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.debug("Schema ready in %s", self.db_file)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE; commit on success, roll back on any error."""
        conn = self.connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise translate_error(e) from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.warning("Transaction rolled back: %s", exc)
                if isinstance(exc, sqlite3.Error):
                    raise translate_error(exc) from exc
                raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """A connection for read-only queries; every statement sees committed state."""
        conn = self.connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise translate_error(e) from e
        finally:
            conn.close()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self.reader() as conn:
            return conn.execute(sql, params).fetchall()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self.reader() as conn:
            return conn.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.fetch_one(sql, params)
        return row[0] if row is not None else None

    # ------------------------- Maintenance ------------------------- #
    def backup(self, backup_path: str) -> str:
        """Copy a consistent snapshot of the store to backup_path using SQLite's online backup."""
        directory = os.path.dirname(os.path.abspath(backup_path))
        os.makedirs(directory, exist_ok=True)
        source = self.connect()
        try:
            target = sqlite3.connect(backup_path)
            try:
                source.backup(target)
            finally:
                target.close()
        except sqlite3.Error as e:
            raise translate_error(e) from e
        finally:
            source.close()
        logger.info("Database backed up to %s", backup_path)
        return backup_path

    def restore(self, backup_path: str) -> None:
        """Overwrite the live store with the contents of a backup file.

        Callers must make sure no other transaction is running.
        """
        if not os.path.exists(backup_path):
            raise StorageError(f"Backup file not found: {backup_path}")
        try:
            source = sqlite3.connect(backup_path)
        except sqlite3.Error as e:
            raise translate_error(e) from e
        target = self.connect()
        try:
            source.backup(target)
        except sqlite3.Error as e:
            raise translate_error(e) from e
        finally:
            target.close()
            source.close()
        logger.info("Database restored from %s", backup_path)
