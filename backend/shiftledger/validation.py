from __future__ import annotations

from typing import Any


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# Keeps sums of a shift's sales inside a 32-bit-safe range per row
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def coerce_int(
    value: Any,
    field: str,
    *,
    required: bool = True,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    """
    Strict integer coercion for JSON and CLI input.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals
    and scientific notation so amounts in cents cannot silently lose value.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
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
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def coerce_cents(value: Any, field: str, *, required: bool = True, allow_zero: bool = True) -> int | None:
    return coerce_int(
        value,
        field,
        required=required,
        minimum=0 if allow_zero else 1,
        maximum=MAX_AMOUNT_CENTS,
    )


def optional_str(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    stripped = value.strip()
    if not stripped:
        return None
    if max_length is not None and len(stripped) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return stripped


def require_object(payload: Any, field: str = "body") -> dict:
    if not isinstance(payload, dict):
        raise ValidationError(f"{field} must be a JSON object")
    return payload
