import re
from typing import Optional

from catalog.errors import ValidationError
from catalog.models import Book, Member

MAX_TITLE_LENGTH = 255
MAX_AUTHOR_LENGTH = 127
MAX_ISBN_LENGTH = 19
MAX_PUBLISHER_LENGTH = 127
MAX_CATEGORY_LENGTH = 63
MAX_NAME_LENGTH = 63
MAX_EMAIL_LENGTH = 127
MAX_PHONE_LENGTH = 19
MAX_ADDRESS_LENGTH = 255

_PHONE_RE = re.compile(r"^[0-9 ()\-]+$")


def clean_text(value: Optional[str]) -> Optional[str]:
    """Strip surrounding whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


class TextValidator:
    """Length and presence checks shared by book and member fields."""

    @staticmethod
    def require(value: Optional[str], field: str, max_length: int) -> str:
        if not value:
            raise ValidationError(f"{field} cannot be empty.")
        if len(value) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters.")
        return value

    @staticmethod
    def optional(value: Optional[str], field: str, max_length: int) -> Optional[str]:
        if value is not None and len(value) > max_length:
            raise ValidationError(f"{field} must be at most {max_length} characters.")
        return value


class ContactValidator:
    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email or len(email) > MAX_EMAIL_LENGTH:
            return False
        at = email.find("@")
        # '@' must not be the first or last character
        if at <= 0 or at == len(email) - 1:
            return False
        return "." in email[at + 1:]

    @staticmethod
    def is_valid_phone(phone: Optional[str]) -> bool:
        if not phone or len(phone) > MAX_PHONE_LENGTH:
            return False
        return bool(_PHONE_RE.match(phone))


def validate_book(book: Book) -> Book:
    """Normalize a book in place and reject it if any field is out of bounds."""
    book.title = TextValidator.require(clean_text(book.title), "Title", MAX_TITLE_LENGTH)
    book.author = TextValidator.require(clean_text(book.author), "Author", MAX_AUTHOR_LENGTH)
    book.isbn = TextValidator.optional(clean_text(book.isbn), "ISBN", MAX_ISBN_LENGTH)
    book.publisher = TextValidator.optional(clean_text(book.publisher), "Publisher", MAX_PUBLISHER_LENGTH)
    book.category = TextValidator.optional(clean_text(book.category), "Category", MAX_CATEGORY_LENGTH)

    for name in ("total_copies", "available_copies"):
        value = getattr(book, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer.")
        if value < 0:
            raise ValidationError(f"{name} cannot be negative.")
    if book.available_copies > book.total_copies:
        raise ValidationError("available_copies cannot exceed total_copies.")
    if book.publication_year is not None and not isinstance(book.publication_year, int):
        raise ValidationError("publication_year must be an integer.")
    return book


def validate_member(member: Member) -> Member:
    member.name = TextValidator.require(clean_text(member.name), "Name", MAX_NAME_LENGTH)
    member.email = clean_text(member.email) or ""
    if not ContactValidator.is_valid_email(member.email):
        raise ValidationError(f"Invalid email address: {member.email!r}")
    member.phone = clean_text(member.phone)
    if member.phone is not None and not ContactValidator.is_valid_phone(member.phone):
        raise ValidationError(f"Invalid phone number: {member.phone!r}")
    member.address = TextValidator.optional(clean_text(member.address), "Address", MAX_ADDRESS_LENGTH)
    member.is_active = bool(member.is_active)
    return member


def validate_id(value: int, field: str = "id") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer.")
    return value


def validate_paging(limit: int, offset: int) -> None:
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset cannot be negative.")
