from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from catalog.database import from_db_timestamp
from catalog.errors import StorageError

SECONDS_PER_DAY = 24 * 60 * 60


def _column(row: sqlite3.Row, name: str, required: bool = True) -> Any:
    """Read one column from a row, failing fast instead of defaulting to 0 or ''."""
    try:
        value = row[name]
    except (IndexError, KeyError) as e:
        raise StorageError(f"Row is missing column '{name}'") from e
    if required and value is None:
        raise StorageError(f"Column '{name}' is unexpectedly NULL")
    return value


def _int_column(row: sqlite3.Row, name: str, required: bool = True) -> Optional[int]:
    value = _column(row, name, required)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise StorageError(f"Column '{name}' is not an integer: {value!r}")
    return value


def _time_column(row: sqlite3.Row, name: str, required: bool = True) -> Optional[datetime]:
    return from_db_timestamp(_column(row, name, required))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(sep=" ") if value else None


@dataclass
class Book:
    """A catalog entry with a pool of physical copies."""

    title: str
    author: str
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    publication_year: Optional[int] = None
    total_copies: int = 1
    available_copies: int = 1
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "category": self.category,
            "publication_year": self.publication_year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=_int_column(row, "id"),
            title=_column(row, "title"),
            author=_column(row, "author"),
            isbn=_column(row, "isbn", required=False),
            publisher=_column(row, "publisher", required=False),
            category=_column(row, "category", required=False),
            publication_year=_int_column(row, "publication_year", required=False),
            total_copies=_int_column(row, "total_copies"),
            available_copies=_int_column(row, "available_copies"),
            created_at=_time_column(row, "created_at"),
            updated_at=_time_column(row, "updated_at"),
        )


@dataclass
class Member:
    """A registered borrower."""

    name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    id: Optional[int] = None
    registration_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        state = "active" if self.is_active else "inactive"
        return f"{self.name} <{self.email}> ({state})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "is_active": self.is_active,
            "registration_date": _iso(self.registration_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Member":
        return Member(
            id=_int_column(row, "id"),
            name=_column(row, "name"),
            email=_column(row, "email"),
            phone=_column(row, "phone", required=False),
            address=_column(row, "address", required=False),
            is_active=bool(_int_column(row, "is_active")),
            registration_date=_time_column(row, "registration_date"),
            created_at=_time_column(row, "created_at"),
            updated_at=_time_column(row, "updated_at"),
        )


class LoanStatus(str, Enum):
    OPEN = "open"
    OVERDUE = "overdue"
    CLOSED = "closed"


def overdue_days(due_date: datetime, effective: datetime) -> int:
    """Whole days between due_date and effective, floored. Non-positive means not overdue."""
    return math.floor((effective - due_date).total_seconds() / SECONDS_PER_DAY)


@dataclass
class Loan:
    """One borrowing of a book by a member: OPEN until returned, then CLOSED for good."""

    book_id: int
    member_id: int
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    is_returned: bool = False
    renewal_count: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Joined display fields, filled in by report queries only
    extras: dict = field(default_factory=dict, compare=False)

    def status(self, now: datetime) -> LoanStatus:
        if self.is_returned:
            return LoanStatus.CLOSED
        if self.due_date < now:
            return LoanStatus.OVERDUE
        return LoanStatus.OPEN

    def overdue_days(self, now: datetime) -> int:
        effective = self.return_date if self.is_returned and self.return_date else now
        return overdue_days(self.due_date, effective)

    def overdue_status(self, now: datetime) -> str:
        days = self.overdue_days(now)
        if days <= 0:
            return "On time"
        return f"Overdue by {days} day{'s' if days != 1 else ''}"

    def to_dict(self, clock: Optional[Callable[[], datetime]] = None) -> dict:
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "member_id": self.member_id,
            "loan_date": _iso(self.loan_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "is_returned": self.is_returned,
            "renewal_count": self.renewal_count,
        }
        if clock is not None:
            now = clock()
            data["status"] = self.status(now).value
            data["overdue_days"] = max(self.overdue_days(now), 0)
        data.update(self.extras)
        return data

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Loan":
        loan = Loan(
            id=_int_column(row, "id"),
            book_id=_int_column(row, "book_id"),
            member_id=_int_column(row, "member_id"),
            loan_date=_time_column(row, "loan_date"),
            due_date=_time_column(row, "due_date"),
            return_date=_time_column(row, "return_date", required=False),
            is_returned=bool(_int_column(row, "is_returned")),
            renewal_count=_int_column(row, "renewal_count"),
            created_at=_time_column(row, "created_at"),
            updated_at=_time_column(row, "updated_at"),
        )
        if loan.is_returned != (loan.return_date is not None):
            raise StorageError(f"Loan {loan.id} has inconsistent return state")
        return loan
