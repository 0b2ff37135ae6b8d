"""
Field validators for Portuguese client data.

Each `check_*` returns an error message, or None when the value is valid.
Empty values are valid (fields are optional) unless the caller requires them.
"""

from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_PATTERNS = (
    re.compile(r"^(\+351)?9[1236]\d{7}$"),  # mobile
    re.compile(r"^(\+351)?2[12]\d{7}$"),  # Lisbon / Porto
    re.compile(r"^(\+351)?2[3-9]\d{7}$"),  # other regions
)
_POSTAL_RE = re.compile(r"^\d{4}-\d{3}$")
_CC_RE = re.compile(r"^\d{8}\d[A-Z]{2}\d$")
_NAME_RE = re.compile(r"^[a-zA-ZÀ-ÿ\s\-']+$")
_NIF_FIRST_DIGITS = set("1235689")


def _s(v: Any) -> str:
    return str(v or "").strip()


def clean_phone(phone: Any) -> str:
    return re.sub(r"[^\d+]", "", _s(phone))


def canonical_phone(phone: Any) -> str:
    """Cleaned phone with the Portuguese country code dropped from national numbers."""
    v = clean_phone(phone)
    if v.startswith("+351") and len(v) == 13:
        return v[4:]
    return v


def check_email(email: Any) -> str | None:
    v = _s(email)
    if not v:
        return None
    return None if _EMAIL_RE.match(v) else "Invalid email address"


def check_phone(phone: Any) -> str | None:
    v = clean_phone(phone)
    if not v:
        return None
    if any(p.match(v) for p in _PHONE_PATTERNS):
        return None
    return "Invalid phone number"


def nif_check_digit(first_eight: str) -> int:
    total = sum(int(d) * (9 - i) for i, d in enumerate(first_eight[:8]))
    check = 11 - (total % 11)
    return 0 if check >= 10 else check


def check_nif(nif: Any) -> str | None:
    v = re.sub(r"\D", "", _s(nif))
    if not _s(nif):
        return None
    if len(v) != 9:
        return "NIF must have 9 digits"
    if v[0] not in _NIF_FIRST_DIGITS:
        return "Invalid NIF"
    if int(v[8]) != nif_check_digit(v):
        return "Invalid NIF"
    return None


def check_postal_code(postal_code: Any) -> str | None:
    v = _s(postal_code)
    if not v:
        return None
    return None if _POSTAL_RE.match(v) else "Invalid postal code (format: NNNN-NNN)"


def check_cc(cc: Any) -> str | None:
    """Citizen card number: 8 digits, check digit, 2 letters, version digit."""
    raw = _s(cc)
    if not raw:
        return None
    v = re.sub(r"[\s-]", "", raw).upper()
    return None if _CC_RE.match(v) else "Invalid citizen card number (format: 12345678 9 ZZ0)"


def check_name(name: Any, *, min_length: int = 2) -> str | None:
    v = _s(name)
    if not v:
        return "Name is required"
    if len(v) < min_length:
        return f"Name must have at least {min_length} characters"
    if not _NAME_RE.match(v):
        return "Name contains invalid characters"
    return None


def collect_errors(checks: dict[str, str | None]) -> dict[str, str]:
    return {k: msg for k, msg in checks.items() if msg}


# ---- formatters ----


def format_phone(phone: Any) -> str:
    digits = re.sub(r"\D", "", _s(phone))
    if not digits:
        return ""
    if not digits.startswith("351") and len(digits) == 9:
        digits = "351" + digits
    if len(digits) == 12:
        return f"+{digits[:3]} {digits[3:6]} {digits[6:9]} {digits[9:]}"
    return _s(phone)


def format_nif(nif: Any) -> str:
    digits = re.sub(r"\D", "", _s(nif))
    if len(digits) == 9:
        return f"{digits[:3]} {digits[3:6]} {digits[6:]}"
    return _s(nif)


def format_postal_code(postal_code: Any) -> str:
    digits = re.sub(r"\D", "", _s(postal_code))
    if len(digits) == 7:
        return f"{digits[:4]}-{digits[4:]}"
    return _s(postal_code)


def format_cc(cc: Any) -> str:
    v = re.sub(r"[\s-]", "", _s(cc)).upper()
    if _CC_RE.match(v):
        return f"{v[:8]} {v[8]} {v[9:11]}{v[11]}"
    return _s(cc)


def format_currency(amount: Any) -> str:
    """pt-PT style euro amount, e.g. 250000 -> '250 000 €'."""
    try:
        n = float(amount or 0)
    except (TypeError, ValueError):
        n = 0.0
    whole = f"{int(round(n)):,}".replace(",", " ")
    return f"{whole} €"
