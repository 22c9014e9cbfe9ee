import re
from typing import Optional

from config import settings


class ISBNValidator:
    """Lenient ISBN helpers for lookup input. Imported catalogs often carry
    hyphenated or partial ISBNs, so a bad checksum never rejects a record.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        """Digits (and a trailing X) only, e.g. '978-604-2-05996-8' -> '9786042059968'"""
        return re.sub(r"[^0-9X]", "", (raw or "").upper())

    @staticmethod
    def is_valid_isbn(raw: Optional[str]) -> bool:
        isbn = ISBNValidator.normalize_isbn(raw)
        if len(isbn) == 10 and isbn[:9].isdigit() and (isbn[9].isdigit() or isbn[9] == "X"):
            digits = [int(ch) for ch in isbn[:9]] + [10 if isbn[9] == "X" else int(isbn[9])]
            return sum(weight * d for weight, d in zip(range(10, 0, -1), digits)) % 11 == 0
        if len(isbn) == 13 and isbn.isdigit():
            return sum(int(ch) * (3 if i % 2 else 1) for i, ch in enumerate(isbn)) % 10 == 0
        return False


class LoanValidator:
    """Borrow-duration rules applied by every caller before Library.borrow_book."""

    @staticmethod
    def error_message() -> str:
        return f"Borrow duration must be between {settings.min_loan_days} and {settings.max_loan_days} days."

    @staticmethod
    def is_valid_duration(days) -> bool:
        if isinstance(days, bool) or not isinstance(days, int):
            return False
        return settings.min_loan_days <= days <= settings.max_loan_days

    @staticmethod
    def parse_duration(raw) -> int:
        """Parse a duration typed by a user; raises ValueError with a user-facing message."""
        try:
            days = int(str(raw).strip())
        except (TypeError, ValueError):
            raise ValueError(LoanValidator.error_message()) from None
        if not LoanValidator.is_valid_duration(days):
            raise ValueError(LoanValidator.error_message())
        return days
