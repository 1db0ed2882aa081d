"""Library Catalog - Core Application Package

This package contains the core application modules including:
- Record store and schema (database.py)
- Book, member and loan records (models.py)
- Book and member repositories (books.py, members.py)
- Loan lifecycle engine (loans.py)
- Read-only reports (reports.py)
- CLI interface (cli.py) and HTTP API (api.py)
"""

from catalog.errors import (
    CatalogError,
    ConflictError,
    NotFoundError,
    PolicyError,
    PolicyReason,
    StorageError,
    TransientStorageError,
    ValidationError,
)
from catalog.library import Library
from catalog.models import Book, Loan, LoanStatus, Member

__all__ = [
    "Book",
    "CatalogError",
    "ConflictError",
    "Library",
    "Loan",
    "LoanStatus",
    "Member",
    "NotFoundError",
    "PolicyError",
    "PolicyReason",
    "StorageError",
    "TransientStorageError",
    "ValidationError",
]
