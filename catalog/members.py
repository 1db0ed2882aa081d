import logging
from datetime import datetime
from typing import Callable, Dict, List

from catalog.database import Store, like_pattern, to_db_timestamp, utcnow
from catalog.errors import ConflictError, NotFoundError
from catalog.models import Member
from catalog.validators import clean_text, validate_id, validate_member, validate_paging

logger = logging.getLogger(__name__)

MEMBER_COLUMNS = (
    "id, name, email, phone, address, registration_date, is_active, created_at, updated_at"
)


class MemberRepository:
    """CRUD, activation and loan-stat queries for the members table."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow, max_results: int = 1000) -> None:
        self.store = store
        self.clock = clock
        self.max_results = max_results

    def create(self, member: Member) -> int:
        validate_member(member)
        now = to_db_timestamp(self.clock())
        with self.store.transaction() as conn:
            if conn.execute("SELECT 1 FROM members WHERE email = ?", (member.email,)).fetchone():
                raise ConflictError(f"Email {member.email} is already registered.")
            cursor = conn.execute(
                "INSERT INTO members (name, email, phone, address, registration_date, is_active, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (member.name, member.email, member.phone, member.address, now,
                 int(member.is_active), now, now),
            )
            member.id = cursor.lastrowid
        logger.info("Member %s registered: %s", member.id, member.email)
        return member.id

    def get(self, member_id: int) -> Member:
        row = self.store.fetch_one(f"SELECT {MEMBER_COLUMNS} FROM members WHERE id = ?", (member_id,))
        if row is None:
            raise NotFoundError(f"Member {member_id} not found.")
        return Member.from_row(row)

    def get_by_email(self, email: str) -> Member:
        row = self.store.fetch_one(
            f"SELECT {MEMBER_COLUMNS} FROM members WHERE email = ?", (clean_text(email),)
        )
        if row is None:
            raise NotFoundError(f"Member with email {email} not found.")
        return Member.from_row(row)

    def update(self, member: Member) -> Member:
        validate_id(member.id, "member id")
        validate_member(member)
        now = to_db_timestamp(self.clock())
        with self.store.transaction() as conn:
            if conn.execute("SELECT 1 FROM members WHERE id = ?", (member.id,)).fetchone() is None:
                raise NotFoundError(f"Member {member.id} not found.")
            clash = conn.execute(
                "SELECT id FROM members WHERE email = ? AND id != ?", (member.email, member.id)
            ).fetchone()
            if clash:
                raise ConflictError(f"Email {member.email} is already registered.")
            conn.execute(
                "UPDATE members SET name = ?, email = ?, phone = ?, address = ?, is_active = ?, "
                "updated_at = ? WHERE id = ?",
                (member.name, member.email, member.phone, member.address,
                 int(member.is_active), now, member.id),
            )
        return self.get(member.id)

    def delete(self, member_id: int) -> None:
        with self.store.transaction() as conn:
            if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                raise NotFoundError(f"Member {member_id} not found.")
            open_loans = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE member_id = ? AND is_returned = 0", (member_id,)
            ).fetchone()[0]
            if open_loans:
                raise ConflictError(f"Member {member_id} has {open_loans} open loan(s) and cannot be deleted.")
            conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
        logger.info("Member %s deleted", member_id)

    def _set_active(self, member_id: int, active: bool) -> Member:
        with self.store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE members SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(active), to_db_timestamp(self.clock()), member_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Member {member_id} not found.")
        logger.info("Member %s %s", member_id, "activated" if active else "deactivated")
        return self.get(member_id)

    def activate(self, member_id: int) -> Member:
        return self._set_active(member_id, True)

    def deactivate(self, member_id: int) -> Member:
        return self._set_active(member_id, False)

    # ------------------------- Queries ------------------------- #
    def _search(self, column: str, term: str) -> List[Member]:
        rows = self.store.fetch_all(
            f"SELECT {MEMBER_COLUMNS} FROM members WHERE LOWER({column}) LIKE LOWER(?) ESCAPE '\\' "
            "ORDER BY name LIMIT ?",
            (like_pattern(term or ""), self.max_results),
        )
        return [Member.from_row(row) for row in rows]

    def search_by_name(self, term: str) -> List[Member]:
        return self._search("name", term)

    def search_by_phone(self, term: str) -> List[Member]:
        return self._search("phone", term)

    def list_all(self, limit: int = 0, offset: int = 0) -> List[Member]:
        validate_paging(limit, offset)
        rows = self.store.fetch_all(
            f"SELECT {MEMBER_COLUMNS} FROM members ORDER BY id LIMIT ? OFFSET ?",
            (limit if limit > 0 else -1, offset),
        )
        return [Member.from_row(row) for row in rows]

    def list_active(self) -> List[Member]:
        rows = self.store.fetch_all(
            f"SELECT {MEMBER_COLUMNS} FROM members WHERE is_active = 1 ORDER BY name"
        )
        return [Member.from_row(row) for row in rows]

    def loan_stats(self, member_id: int) -> Dict[str, int]:
        """Total, current and overdue loan counts for one member."""
        now = to_db_timestamp(self.clock())
        with self.store.reader() as conn:
            if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                raise NotFoundError(f"Member {member_id} not found.")
            row = conn.execute(
                "SELECT COUNT(*) AS total_loans, "
                "COALESCE(SUM(is_returned = 0), 0) AS current_loans, "
                "COALESCE(SUM(is_returned = 0 AND due_date < ?), 0) AS overdue_loans "
                "FROM loans WHERE member_id = ?",
                (now, member_id),
            ).fetchone()
        return {
            "total_loans": row["total_loans"],
            "current_loans": row["current_loans"],
            "overdue_loans": row["overdue_loans"],
        }
