import logging
import os
from datetime import datetime
from typing import Callable, Optional

from catalog.books import BookRepository
from catalog.config import Settings
from catalog.database import Store, utcnow
from catalog.loans import LoanEngine
from catalog.members import MemberRepository
from catalog.reports import ReportService

logger = logging.getLogger(__name__)


class Library:
    """The context every caller works through: one store, one policy, one clock.

    Nothing here is process-global; the CLI builds one per invocation, the API
    one per application, and tests one per test database.
    """

    def __init__(self, db_file: Optional[str] = None, settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.settings = settings or Settings()
        self.clock = clock or utcnow
        self.store = Store(db_file or self.settings.database_path, busy_timeout=self.settings.busy_timeout)
        self.store.initialize()

        limit = self.settings.max_search_results
        self.books = BookRepository(self.store, self.clock, max_results=limit)
        self.members = MemberRepository(self.store, self.clock, max_results=limit)
        self.loans = LoanEngine(self.store, self.settings, self.clock)
        self.reports = ReportService(self.store, self.clock)

    @property
    def db_file(self) -> str:
        return self.store.db_file

    # ------------------------- Maintenance ------------------------- #
    def backup(self, backup_path: Optional[str] = None) -> str:
        """Snapshot the store; defaults to a timestamped file in the backup directory."""
        if not backup_path:
            stamp = self.clock().strftime("%Y%m%d_%H%M%S")
            backup_path = os.path.join(self.settings.backup_directory, f"library_backup_{stamp}.db")
        return self.store.backup(backup_path)

    def restore(self, backup_path: str) -> None:
        """Replace the store's contents with a backup. Run only while no other caller is active."""
        self.store.restore(backup_path)
