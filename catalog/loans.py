"""Loan lifecycle engine.

A loan is OPEN from borrow until return, may be renewed a limited number of
times while open and not overdue, and is CLOSED for good once returned.
Borrow and return change the `loans` row and the book's `available_copies`
in the same transaction; the copy counter update is conditional so that a
concurrent borrower of the last copy cannot drive it below zero.
"""

import inspect
import logging
import sqlite3
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable, Dict, Optional

from catalog.config import Settings
from catalog.database import Store, to_db_timestamp, utcnow
from catalog.errors import CatalogError, NotFoundError, PolicyError, PolicyReason, ValidationError
from catalog.models import Loan, overdue_days as _overdue_days
from catalog.validators import validate_id

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("catalog.audit")

LOAN_COLUMNS = (
    "id, book_id, member_id, loan_date, due_date, return_date, "
    "is_returned, renewal_count, created_at, updated_at"
)


def _outcome(exc: CatalogError) -> str:
    if isinstance(exc, PolicyError):
        return exc.reason.value
    return type(exc).__name__


def audited(operation: str):
    """Emit one structured audit record per engine call, whatever the outcome."""

    def decorator(func):
        signature = inspect.signature(func)

        @wraps(func)
        def wrapper(self, *args, **kwargs):
            bound = signature.bind(self, *args, **kwargs)
            event: Dict[str, Any] = {
                "operation": operation,
                **{k: v for k, v in bound.arguments.items() if k != "self"},
            }
            try:
                result = func(self, *args, **kwargs)
            except CatalogError as exc:
                event["outcome"] = _outcome(exc)
                audit_logger.warning("%s rejected: %s", operation, exc, extra={"audit": event})
                raise
            event["outcome"] = "ok"
            event["loan_id"] = result.id if isinstance(result, Loan) else result
            audit_logger.info("%s ok: loan %s", operation, event["loan_id"], extra={"audit": event})
            return result

        return wrapper

    return decorator


class LoanEngine:
    """Borrow, return and renew books against the shared store."""

    def __init__(self, store: Store, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock

    # ------------------------- Eligibility ------------------------- #
    def _check_book(self, conn: sqlite3.Connection, book_id: int) -> None:
        row = conn.execute("SELECT available_copies FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise PolicyError(PolicyReason.NOT_AVAILABLE, f"Book {book_id} does not exist.")
        if row["available_copies"] <= 0:
            raise PolicyError(PolicyReason.NOT_AVAILABLE, f"No copies of book {book_id} are available.")

    def _check_member(self, conn: sqlite3.Connection, member_id: int, now: str) -> None:
        row = conn.execute("SELECT is_active FROM members WHERE id = ?", (member_id,)).fetchone()
        if row is None:
            raise PolicyError(PolicyReason.MEMBER_INACTIVE, f"Member {member_id} does not exist.")
        if not row["is_active"]:
            raise PolicyError(PolicyReason.MEMBER_INACTIVE, f"Member {member_id} is inactive.")

        counts = conn.execute(
            "SELECT COUNT(*) AS open_loans, COALESCE(SUM(due_date < ?), 0) AS overdue "
            "FROM loans WHERE member_id = ? AND is_returned = 0",
            (now, member_id),
        ).fetchone()
        limit = self.settings.max_loan_count
        if counts["open_loans"] >= limit:
            raise PolicyError(
                PolicyReason.LOAN_LIMIT_EXCEEDED,
                f"Member {member_id} already has {counts['open_loans']} books on loan (max {limit}).",
            )
        if counts["overdue"]:
            raise PolicyError(
                PolicyReason.HAS_OVERDUE, f"Member {member_id} has {counts['overdue']} overdue loan(s)."
            )

    def _check_duplicate(self, conn: sqlite3.Connection, book_id: int, member_id: int) -> None:
        row = conn.execute(
            "SELECT id FROM loans WHERE book_id = ? AND member_id = ? AND is_returned = 0",
            (book_id, member_id),
        ).fetchone()
        if row is not None:
            raise PolicyError(
                PolicyReason.DUPLICATE_LOAN,
                f"Member {member_id} already has book {book_id} on loan (loan {row['id']}).",
            )

    def _check_borrow(self, conn: sqlite3.Connection, book_id: int, member_id: int, now: str) -> None:
        # Order matters: each failure reports the first rule that is broken
        self._check_book(conn, book_id)
        self._check_member(conn, member_id, now)
        self._check_duplicate(conn, book_id, member_id)

    def check_borrow(self, book_id: int, member_id: int) -> None:
        """Raise the PolicyError a borrow would hit right now, without writing anything."""
        validate_id(book_id, "book id")
        validate_id(member_id, "member id")
        with self.store.reader() as conn:
            self._check_borrow(conn, book_id, member_id, to_db_timestamp(self.clock()))

    # ------------------------- Transitions ------------------------- #
    @audited("borrow")
    def borrow(self, book_id: int, member_id: int, loan_days: Optional[int] = None) -> int:
        """Lend one copy of a book to a member and return the new loan id."""
        validate_id(book_id, "book id")
        validate_id(member_id, "member id")
        if loan_days is None or loan_days <= 0:
            loan_days = self.settings.default_loan_days

        now = self.clock()
        stamp = to_db_timestamp(now)
        due = to_db_timestamp(now + timedelta(days=loan_days))
        with self.store.transaction() as conn:
            self._check_borrow(conn, book_id, member_id, stamp)
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1, updated_at = ? "
                "WHERE id = ? AND available_copies > 0",
                (stamp, book_id),
            )
            if cursor.rowcount != 1:
                raise PolicyError(PolicyReason.NOT_AVAILABLE, f"No copies of book {book_id} are available.")
            cursor = conn.execute(
                "INSERT INTO loans (book_id, member_id, loan_date, due_date, is_returned, renewal_count, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, 0, 0, ?, ?)",
                (book_id, member_id, stamp, due, stamp, stamp),
            )
            return cursor.lastrowid

    def _load(self, conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute(f"SELECT {LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Loan {loan_id} not found.")
        return Loan.from_row(row)

    def _close(self, conn: sqlite3.Connection, loan: Loan) -> None:
        if loan.is_returned:
            raise PolicyError(PolicyReason.ALREADY_RETURNED, f"Loan {loan.id} was already returned.")
        stamp = to_db_timestamp(self.clock())
        cursor = conn.execute(
            "UPDATE loans SET is_returned = 1, return_date = ?, updated_at = ? "
            "WHERE id = ? AND is_returned = 0",
            (stamp, stamp, loan.id),
        )
        if cursor.rowcount != 1:
            raise PolicyError(PolicyReason.ALREADY_RETURNED, f"Loan {loan.id} was already returned.")
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies + 1, updated_at = ? "
            "WHERE id = ? AND available_copies < total_copies",
            (stamp, loan.book_id),
        )
        if cursor.rowcount == 0:
            # Only reachable if total_copies was edited down while the copy was out
            logger.warning(
                "Book %s already has every copy on the shelf; availability not incremented for loan %s",
                loan.book_id, loan.id,
            )

    @audited("return")
    def return_loan(self, loan_id: int) -> Loan:
        """Close an open loan and put the copy back on the shelf."""
        validate_id(loan_id, "loan id")
        with self.store.transaction() as conn:
            self._close(conn, self._load(conn, loan_id))
        return self.get(loan_id)

    @audited("return")
    def return_book(self, book_id: int, member_id: int) -> Loan:
        """Close the most recent open loan of book_id held by member_id."""
        validate_id(book_id, "book id")
        validate_id(member_id, "member id")
        with self.store.transaction() as conn:
            row = conn.execute(
                f"SELECT {LOAN_COLUMNS} FROM loans WHERE book_id = ? AND member_id = ? AND is_returned = 0 "
                "ORDER BY loan_date DESC, id DESC LIMIT 1",
                (book_id, member_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"No open loan of book {book_id} for member {member_id}.")
            loan = Loan.from_row(row)
            self._close(conn, loan)
        return self.get(loan.id)

    @audited("extend")
    def extend(self, loan_id: int, extend_days: Optional[int] = None) -> Loan:
        """Push the due date of an open, not yet overdue loan out by extend_days."""
        validate_id(loan_id, "loan id")
        if extend_days is None:
            extend_days = self.settings.default_loan_days
        if extend_days <= 0:
            raise ValidationError("extend_days must be positive.")

        limit = self.settings.max_renewal_count
        now = self.clock()
        with self.store.transaction() as conn:
            loan = self._load(conn, loan_id)
            if loan.is_returned:
                raise PolicyError(PolicyReason.ALREADY_RETURNED, f"Loan {loan_id} was already returned.")
            if loan.renewal_count >= limit:
                raise PolicyError(
                    PolicyReason.RENEWAL_LIMIT_EXCEEDED,
                    f"Loan {loan_id} was renewed {loan.renewal_count} time(s) (max {limit}).",
                )
            if loan.due_date < now:
                raise PolicyError(PolicyReason.OVERDUE, f"Loan {loan_id} is overdue and cannot be renewed.")
            new_due = loan.due_date + timedelta(days=extend_days)
            cursor = conn.execute(
                "UPDATE loans SET due_date = ?, renewal_count = renewal_count + 1, updated_at = ? "
                "WHERE id = ? AND is_returned = 0 AND renewal_count < ?",
                (to_db_timestamp(new_due), to_db_timestamp(now), loan_id, limit),
            )
            if cursor.rowcount != 1:
                raise PolicyError(PolicyReason.ALREADY_RETURNED, f"Loan {loan_id} changed while renewing.")
        return self.get(loan_id)

    # ------------------------- Lookups ------------------------- #
    def get(self, loan_id: int) -> Loan:
        with self.store.reader() as conn:
            return self._load(conn, loan_id)

    def overdue_days(self, due_date: datetime, return_date: Optional[datetime] = None) -> int:
        return _overdue_days(due_date, return_date or self.clock())
