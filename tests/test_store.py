import os
import sqlite3

import pytest

from catalog import Book, ConflictError, Library, Member, StorageError, TransientStorageError, ValidationError
from catalog.config import Settings
from catalog.database import from_db_timestamp, like_pattern, translate_error
from catalog.models import Loan


def test_initialize_is_idempotent(lib):
    lib.books.create(Book("Kept", "Author"))
    lib.store.initialize()
    assert lib.books.count() == 1


def test_library_creates_parent_directory(tmp_path, settings, clock):
    db_file = tmp_path / "nested" / "dir" / "catalog.db"
    Library(db_file=str(db_file), settings=settings, clock=clock)
    assert db_file.exists()


def test_transaction_rolls_back_on_error(lib):
    with pytest.raises(RuntimeError):
        with lib.store.transaction() as conn:
            conn.execute(
                "INSERT INTO members (name, email, registration_date, created_at, updated_at) "
                "VALUES ('Temp', 'temp@example.com', '2024-01-01 00:00:00', "
                "'2024-01-01 00:00:00', '2024-01-01 00:00:00')"
            )
            raise RuntimeError("boom")
    assert lib.members.list_all() == []


def test_unique_violation_maps_to_conflict(lib):
    lib.books.create(Book("One", "A", isbn="42"))
    with pytest.raises(ConflictError):
        with lib.store.transaction() as conn:
            conn.execute(
                "INSERT INTO books (title, author, isbn, created_at, updated_at) "
                "VALUES ('Two', 'B', '42', '2024-01-01 00:00:00', '2024-01-01 00:00:00')"
            )


def test_check_constraint_guards_copy_counter(lib):
    book_id = lib.books.create(Book("Guarded", "A", total_copies=1, available_copies=0))
    with pytest.raises(StorageError):
        with lib.store.transaction() as conn:
            conn.execute("UPDATE books SET available_copies = -1 WHERE id = ?", (book_id,))
    assert lib.books.get(book_id).available_copies == 0


def test_translate_error():
    assert isinstance(translate_error(sqlite3.OperationalError("database is locked")), TransientStorageError)
    assert isinstance(translate_error(sqlite3.IntegrityError("UNIQUE constraint failed: x")), ConflictError)
    assert type(translate_error(sqlite3.OperationalError("no such table: x"))) is StorageError


def test_like_pattern_escapes_wildcards():
    assert like_pattern("50%_off\\") == "%50\\%\\_off\\\\%"


def test_malformed_timestamp():
    with pytest.raises(StorageError):
        from_db_timestamp("yesterday-ish")
    assert from_db_timestamp(None) is None


def test_corrupted_row_fails_fast(lib):
    book_id = lib.books.create(Book("Corrupt", "A"))
    conn = sqlite3.connect(lib.db_file)
    try:
        conn.execute("UPDATE books SET created_at = 'not a date' WHERE id = ?", (book_id,))
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StorageError):
        lib.books.get(book_id)


def test_row_missing_columns():
    with pytest.raises(StorageError, match="missing column"):
        Book.from_row({"id": 1, "title": "T"})
    with pytest.raises(StorageError, match="NULL"):
        Member.from_row({"id": 1, "name": None})


def test_loan_row_with_inconsistent_return_state():
    row = {
        "id": 7, "book_id": 1, "member_id": 1,
        "loan_date": "2024-01-01 00:00:00", "due_date": "2024-01-15 00:00:00",
        "return_date": None, "is_returned": 1, "renewal_count": 0,
        "created_at": "2024-01-01 00:00:00", "updated_at": "2024-01-01 00:00:00",
    }
    with pytest.raises(StorageError, match="inconsistent"):
        Loan.from_row(row)


def test_backup_and_restore(lib, settings):
    book_id = lib.books.create(Book("Before Backup", "A"))
    backup_path = lib.backup()

    assert os.path.dirname(backup_path) == settings.backup_directory
    assert os.path.exists(backup_path)

    lib.books.create(Book("After Backup", "B"))
    lib.restore(backup_path)
    assert [b.id for b in lib.books.list_all()] == [book_id]


def test_restore_missing_file(lib, tmp_path):
    with pytest.raises(StorageError):
        lib.restore(str(tmp_path / "nope.db"))


def test_store_busy_timeout_from_settings(lib, settings):
    assert lib.store.busy_timeout == settings.busy_timeout


@pytest.mark.parametrize("overrides", [
    {"default_loan_days": 0},
    {"max_loan_count": 0},
    {"max_renewal_count": -1},
    {"max_search_results": 0},
    {"busy_timeout": -1.0},
])
def test_settings_validation(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_settings_defaults_allow_zero_renewals():
    assert Settings(max_renewal_count=0).max_renewal_count == 0
