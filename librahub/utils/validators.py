import re
from typing import Optional

PURPOSES = ("personal", "academic", "professional", "other")
CONDITIONS = ("excellent", "good", "fair", "poor", "damaged")
DAMAGE_CONDITIONS = ("poor", "damaged")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not str(text).strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email) and bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def sanitize_text(text: str) -> str:
        if text is None:
            return ""
        cleaned = re.sub(r"<[^>]*>", "", text)
        return cleaned.strip()


def validate_book_fields(data: dict) -> None:
    """Required-field checks of the catalog form. Raises ValueError."""
    for name in ("title", "author", "isbn", "category"):
        if TextValidator.is_blank(data.get(name)):
            raise ValueError(f"{name} is required.")
    try:
        copies = int(data.get("copies", 1))
    except (TypeError, ValueError):
        raise ValueError("copies must be a whole number.")
    if copies < 1:
        raise ValueError("copies must be at least 1.")
    available = data.get("availableCopies")
    if available is not None and not 0 <= int(available) <= copies:
        raise ValueError("availableCopies must be between 0 and copies.")


def validate_account_fields(data: dict) -> None:
    if TextValidator.is_blank(data.get("name")):
        raise ValueError("name is required.")
    if not TextValidator.validate_email(data.get("email")):
        raise ValueError("A valid email is required.")


def validate_borrow_intent(purpose: str, agreement: bool) -> None:
    if purpose not in PURPOSES:
        raise ValueError(f"purpose must be one of: {', '.join(PURPOSES)}.")
    if not agreement:
        raise ValueError("You must agree to the terms and conditions.")


def validate_return_report(condition: str, feedback: Optional[str], confirmed: bool) -> None:
    if not confirmed:
        raise ValueError("You must confirm the return.")
    if condition not in CONDITIONS:
        raise ValueError(f"condition must be one of: {', '.join(CONDITIONS)}.")
    if condition in DAMAGE_CONDITIONS and TextValidator.is_blank(feedback):
        raise ValueError("Please describe the damage to the book.")
