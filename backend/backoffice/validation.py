from __future__ import annotations

from typing import Any

from .errors import BackofficeError


# Maximum single amount: $9,999,999.99 (999,999,999 cents)
MAX_CENTS = 999_999_999


class ValidationError(BackofficeError, ValueError):
    """400-level input problem."""
    code = "validation_error"


def read_json_body(request) -> dict:
    """Request JSON as a dict; empty or non-object bodies become {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def require_string(payload: dict, *keys: str, label: str | None = None) -> str:
    """First non-empty string among keys (trimmed)."""
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise ValidationError(f"{label or keys[0]} is required")


def optional_string(payload: dict, *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def string_list(value: Any, field: str, *, required: bool = True) -> list[str]:
    """
    Normalize a list of identifiers.

    Accepts a JSON array or a comma-separated string; trims entries, drops
    blanks and keeps first-seen order without duplicates.
    """
    if value is None or value == "":
        items: list = []
    elif isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValidationError(f"{field} must be an array of strings")

    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            raise ValidationError(f"{field} must be an array of strings")
        s = str(item).strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)

    if required and not out:
        raise ValidationError(f"{field} must be a non-empty array")
    return out


def coerce_cents(value: Any, field: str, *, default: int | None = None) -> int | None:
    """
    Strict non-negative integer cents.

    Rejects floats, booleans, decimals in strings and scientific notation.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return default

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        cents = value
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            cents = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if cents < 0:
        raise ValidationError(f"{field} must not be negative")
    if cents > MAX_CENTS:
        raise ValidationError(f"{field} exceeds maximum of {MAX_CENTS}")
    return cents


def bounded_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    """Lenient paging parameter: falls back to default and clamps to range."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    return max(minimum, min(maximum, n))
