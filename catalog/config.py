import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

from catalog.errors import ValidationError

load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Database settings
    database_path: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    backup_directory: str = os.getenv("LIBRARY_BACKUP_DIR", "backups")
    busy_timeout: float = float(os.getenv("LIBRARY_BUSY_TIMEOUT", "5"))

    # Loan policy
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    max_loan_count: int = int(os.getenv("MAX_LOAN_COUNT", "5"))
    max_renewal_count: int = int(os.getenv("MAX_RENEWAL_COUNT", "2"))

    # Search results are truncated at this many rows
    max_search_results: int = int(os.getenv("MAX_SEARCH_RESULTS", "1000"))

    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self) -> None:
        if self.default_loan_days <= 0:
            raise ValidationError("default_loan_days must be positive")
        if self.max_loan_count <= 0:
            raise ValidationError("max_loan_count must be positive")
        if self.max_renewal_count < 0:
            raise ValidationError("max_renewal_count cannot be negative")
        if self.max_search_results <= 0:
            raise ValidationError("max_search_results must be positive")
        if self.busy_timeout < 0:
            raise ValidationError("busy_timeout cannot be negative")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for entry points (CLI, API). The core always takes them explicitly."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
