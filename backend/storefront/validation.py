from __future__ import annotations

import re
from typing import Any


# Maximum price: 99,99,999.99 in minor units
MAX_PRICE_CENTS = 999_999_999

_PHONE_STRIP = re.compile(r"[\s\-().]")
_PHONE_VALID = re.compile(r"^\+?\d{10,15}$")

# Country code for numbers entered with a domestic prefix
DEFAULT_COUNTRY_CODE = "91"


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., checkout already in progress)."""


class NotFoundError(LookupError):
    """404-level missing record."""


def coerce_int(field: str, value: Any, *, minimum: int | None = None, required: bool = True) -> int | None:
    """
    Strict integer coercion for JSON input.

    Rejects floats, booleans, decimals in strings and scientific notation.
    """
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    return result


def normalize_phone(value: Any) -> str | None:
    """
    Normalize a customer phone number into the key loyalty accounts use.

    - None / "" -> None
    - spaces, dashes, dots and parentheses are dropped
    - result must be 10-15 digits with an optional leading '+'
    - domestic numbers are stored as their 10 national digits, so
      "+91 98765 43210", "919876543210", "09876543210" and "98765 43210"
      all map to "9876543210"
    - other international numbers keep their leading '+'
    """
    if value is None:
        return None
    s = _PHONE_STRIP.sub("", str(value))
    if not s:
        return None
    if not _PHONE_VALID.match(s):
        raise ValidationError("customer_phone must be 10-15 digits")

    digits = s.lstrip("+")
    if len(digits) == 12 and digits.startswith(DEFAULT_COUNTRY_CODE):
        return digits[-10:]
    if not s.startswith("+") and len(digits) == 11 and digits.startswith("0"):
        return digits[-10:]
    return s


def validate_discount_percent(value: Any, allowed) -> int:
    pct = coerce_int("discount_percent", value if value is not None else 0)
    if pct not in allowed:
        allowed_str = ", ".join(str(a) for a in allowed)
        raise ValidationError(f"discount_percent must be one of: {allowed_str}")
    return pct


def validate_payment_method(value: Any, allowed) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError("payment_method is required")
    method = value.strip().lower()
    if method not in allowed:
        raise ValidationError(f"payment_method must be one of: {', '.join(allowed)}")
    return method


def clean_optional_str(value: Any, max_len: int) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if len(s) > max_len:
        raise ValidationError(f"value exceeds {max_len} characters")
    return s
