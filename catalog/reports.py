from datetime import date, datetime
from typing import Any, Callable, Dict, List, Sequence, Tuple

from catalog.database import Store, to_db_timestamp, utcnow
from catalog.errors import ValidationError
from catalog.loans import LOAN_COLUMNS
from catalog.models import Loan


class ReportService:
    """Read-only projections over committed loan, book and member rows."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def _loans(self, where: str, params: Sequence[Any] = (), order: str = "loan_date DESC, id DESC") -> List[Loan]:
        rows = self.store.fetch_all(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE {where} ORDER BY {order}", params
        )
        return [Loan.from_row(row) for row in rows]

    # ------------------------- Histories ------------------------- #
    def member_history(self, member_id: int, include_returned: bool = True) -> List[Loan]:
        if include_returned:
            return self._loans("member_id = ?", (member_id,))
        return self._loans("member_id = ? AND is_returned = 0", (member_id,))

    def member_current_loans(self, member_id: int) -> List[Loan]:
        return self.member_history(member_id, include_returned=False)

    def book_history(self, book_id: int, include_returned: bool = True) -> List[Loan]:
        if include_returned:
            return self._loans("book_id = ?", (book_id,))
        return self._loans("book_id = ? AND is_returned = 0", (book_id,))

    def current_loans(self) -> List[Loan]:
        return self._loans("is_returned = 0")

    def overdue_loans(self) -> List[Loan]:
        now = to_db_timestamp(self.clock())
        return self._loans("is_returned = 0 AND due_date < ?", (now,), order="due_date ASC, id ASC")

    def loans_due_on(self, day: date) -> List[Loan]:
        """Open loans whose due date falls on the given calendar day (UTC)."""
        if isinstance(day, datetime):
            day = day.date()
        return self._loans(
            "is_returned = 0 AND date(due_date) = ?", (day.isoformat(),), order="due_date ASC, id ASC"
        )

    # ------------------------- Aggregates ------------------------- #
    def loan_statistics(self) -> Dict[str, int]:
        now = to_db_timestamp(self.clock())
        row = self.store.fetch_one(
            "SELECT COUNT(*) AS total_loans, "
            "COALESCE(SUM(is_returned = 0), 0) AS current_loans, "
            "COALESCE(SUM(is_returned = 0 AND due_date < ?), 0) AS overdue_loans, "
            "COALESCE(SUM(is_returned = 1), 0) AS returned_loans "
            "FROM loans",
            (now,),
        )
        return {key: row[key] for key in ("total_loans", "current_loans", "overdue_loans", "returned_loans")}

    def catalog_statistics(self) -> Dict[str, int]:
        books = self.store.fetch_one(
            "SELECT COUNT(*) AS total_books, COALESCE(SUM(total_copies), 0) AS total_copies, "
            "COALESCE(SUM(available_copies), 0) AS available_copies, "
            "COUNT(DISTINCT author) AS unique_authors FROM books"
        )
        members = self.store.fetch_one(
            "SELECT COUNT(*) AS total_members, COALESCE(SUM(is_active = 1), 0) AS active_members FROM members"
        )
        stats = {key: books[key] for key in books.keys()}
        stats.update({key: members[key] for key in members.keys()})
        return stats

    def popular_books_by_loans(self, limit: int = 10) -> List[Tuple[int, int]]:
        """(book_id, loan_count) pairs, most borrowed first, ties by title like BookRepository.popular."""
        if limit <= 0:
            raise ValidationError("limit must be positive.")
        rows = self.store.fetch_all(
            "SELECT l.book_id AS book_id, COUNT(*) AS loan_count FROM loans l "
            "JOIN books b ON b.id = l.book_id GROUP BY l.book_id "
            "ORDER BY loan_count DESC, b.title ASC, l.book_id ASC LIMIT ?",
            (limit,),
        )
        return [(row["book_id"], row["loan_count"]) for row in rows]

    def overdue_report(self) -> List[Loan]:
        """Overdue loans with the book title, member name and days overdue attached."""
        now_dt = self.clock()
        columns = ", ".join(f"l.{c.strip()}" for c in LOAN_COLUMNS.split(","))
        rows = self.store.fetch_all(
            f"SELECT {columns}, b.title AS book_title, m.name AS member_name, m.email AS member_email "
            "FROM loans l JOIN books b ON b.id = l.book_id JOIN members m ON m.id = l.member_id "
            "WHERE l.is_returned = 0 AND l.due_date < ? ORDER BY l.due_date ASC, l.id ASC",
            (to_db_timestamp(now_dt),),
        )
        report = []
        for row in rows:
            loan = Loan.from_row(row)
            loan.extras = {
                "book_title": row["book_title"],
                "member_name": row["member_name"],
                "member_email": row["member_email"],
                "overdue_days": loan.overdue_days(now_dt),
            }
            report.append(loan)
        return report
