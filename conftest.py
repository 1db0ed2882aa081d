import os
from datetime import datetime, timedelta

import pytest

from catalog.config import Settings
from catalog.library import Library


class FakeClock:
    """A clock the tests can move forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 10, 0, 0))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "library.db"),
        backup_directory=str(tmp_path / "backups"),
        default_loan_days=14,
        max_loan_count=5,
        max_renewal_count=2,
        max_search_results=1000,
        busy_timeout=30.0,
    )


@pytest.fixture
def lib(tmp_path, request, settings, clock):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, settings=settings, clock=clock)
    yield lib
    for suffix in ("", "-wal", "-shm"):
        try:
            os.remove(db_file + suffix)
        except OSError:
            pass
