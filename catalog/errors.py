from enum import Enum


class CatalogError(Exception):
    """Base class for every failure raised by the catalog."""


class ValidationError(CatalogError, ValueError):
    """Malformed or out-of-range input. Raised before any write."""


class NotFoundError(CatalogError, LookupError):
    """A referenced book, member or loan does not exist."""


class ConflictError(CatalogError):
    """Uniqueness violation or a deletion blocked by open loans."""


class PolicyReason(str, Enum):
    NOT_AVAILABLE = "not_available"
    MEMBER_INACTIVE = "member_inactive"
    LOAN_LIMIT_EXCEEDED = "loan_limit_exceeded"
    HAS_OVERDUE = "has_overdue"
    DUPLICATE_LOAN = "duplicate_loan"
    ALREADY_RETURNED = "already_returned"
    RENEWAL_LIMIT_EXCEEDED = "renewal_limit_exceeded"
    OVERDUE = "overdue"


class PolicyError(CatalogError):
    """Business-rule rejection; carries the specific reason."""

    def __init__(self, reason: PolicyReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class StorageError(CatalogError):
    """Transaction or connection failure, or a row that cannot be decoded."""


class TransientStorageError(StorageError):
    """The store was busy or locked; the caller may retry."""
