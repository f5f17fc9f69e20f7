"""Identifier and field normalization shared by the registry clients and preload."""

import re
from datetime import date, datetime
from typing import Any, Optional

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")
_HCPCS_CODE = re.compile(r"^[A-Z0-9]{5}$")

TRUE_FLAGS = {"true", "t", "1", "yes", "y"}
FALSE_FLAGS = {"false", "f", "0", "no", "n"}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    # NaN from pandas
    if isinstance(value, float) and value != value:
        return True
    return str(value).strip() == ""


def normalize_code_key(value: Any) -> str:
    """Trimmed, upper-cased identifier key. Blank values become ''."""
    if _is_blank(value):
        return ""
    return str(value).strip().upper()


def normalize_npi(value: Any) -> str:
    """Trimmed NPI string; a float-formatted value like '1234567890.0' loses its suffix."""
    if _is_blank(value):
        return ""
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


def normalize_hcpcs_code(value: Any) -> Optional[str]:
    """Canonical 5-character code, or None when the value is not code-shaped."""
    if _is_blank(value):
        return None
    text = _WHITESPACE.sub("", str(value))
    if text.endswith(".0"):
        text = text[:-2]
    text = text.upper()
    return text if _HCPCS_CODE.match(text) else None


def parse_registry_date(value: Any) -> Optional[date]:
    """Parse a YYYYMMDD-style date; punctuation is ignored. Anything else is None."""
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    digits = _NON_DIGITS.sub("", str(value))
    if len(digits) != 8:
        return None
    try:
        return datetime.strptime(digits, "%Y%m%d").date()
    except ValueError:
        return None


def parse_flag(value: Any) -> Optional[bool]:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_FLAGS:
        return True
    if text in FALSE_FLAGS:
        return False
    return None


def clean_text(value: Any) -> str:
    return "" if _is_blank(value) else str(value).strip()
