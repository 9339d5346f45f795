"""
sanitize.py — Markup stripping and composition bounds for user-supplied text.

All free text that ends up in an alert (titles, messages, Q&A answers) goes
through ``sanitize_text`` before validation, so the stored value is plain
text with every tag and attribute removed. Script and style bodies are
dropped entirely rather than flattened into the text.
"""

from __future__ import annotations

import re
import warnings
from typing import Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from skyguard.core.config import settings
from skyguard.core.errors import ValidationError

_NON_DIGIT = re.compile(r"\D")
_US_PHONE = re.compile(r"^[2-9]\d{2}[2-9]\d{2}\d{4}$")
_INTL_PHONE = re.compile(r"^\d{7,15}$")


def sanitize_text(value: Optional[str]) -> str:
    """Strip all markup and surrounding whitespace."""
    if not value:
        return ""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text().strip()


def _bounded(value: Optional[str], label: str, limit: int) -> str:
    text = sanitize_text(value)
    if not text:
        raise ValidationError(f"{label} cannot be empty", field=label.lower())
    if len(text) > limit:
        raise ValidationError(
            f"{label} must be {limit} characters or fewer",
            field=label.lower(),
            max_length=limit,
            length=len(text),
        )
    return text


def validate_title(value: Optional[str]) -> str:
    return _bounded(value, "Title", settings.TITLE_MAX_LENGTH)


def validate_message(value: Optional[str]) -> str:
    return _bounded(value, "Message", settings.MESSAGE_MAX_LENGTH)


def clip(value: str, limit: int) -> str:
    """Shorten synthesized text to ``limit`` characters with an ellipsis."""
    if len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"


def validate_phone_number(phone: str) -> str:
    """
    Check a phone number and return its digits.

    Accepts 10-digit US numbers (area code and exchange may not start with
    0 or 1) and international numbers of 7–15 digits. Formatting characters
    are ignored.

    Raises
    ------
    ValidationError
        With the reason the number was rejected.
    """
    digits = _NON_DIGIT.sub("", phone or "")

    if len(digits) == 10:
        if not _US_PHONE.match(digits):
            raise ValidationError("Invalid US phone number format", field="phone_number")
    elif 7 <= len(digits) <= 15:
        if not _INTL_PHONE.match(digits):
            raise ValidationError(
                "Invalid international phone number format", field="phone_number"
            )
    else:
        raise ValidationError(
            "Phone number must be 10 digits (US) or 7-15 digits (international)",
            field="phone_number",
        )
    return digits


def format_phone_number(phone: str) -> str:
    """Display form: ``(555) 123-4567`` for US numbers, digit groups otherwise."""
    digits = _NON_DIGIT.sub("", phone)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) > 10:
        return " ".join(digits[i:i + 4] for i in range(0, len(digits), 4))
    return phone
