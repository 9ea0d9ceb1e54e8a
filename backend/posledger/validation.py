from __future__ import annotations

from datetime import datetime
from typing import Any

from .errors import ValidationError
from .time_utils import parse_iso_datetime


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical amounts
MAX_AMOUNT_CENTS = 999_999_999


def coerce_int(key: str, value: Any) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects booleans, floats, decimals and scientific notation; accepts ints
    and plain digit strings (with optional leading minus).
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer", field=key)
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)", field=key)
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)", field=key)
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer", field=key)
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal", field=key)
    raise ValidationError(f"{key} must be an integer", field=key)


def require_int(payload: dict, key: str) -> int:
    if payload.get(key) is None:
        raise ValidationError(f"{key} is required", field=key)
    return coerce_int(key, payload[key])


def optional_int(payload: dict, key: str) -> int | None:
    if payload.get(key) is None:
        return None
    return coerce_int(key, payload[key])


def require_amount_cents(payload: dict, key: str) -> int:
    amount = require_int(payload, key)
    if amount > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{key} exceeds maximum of {MAX_AMOUNT_CENTS}", field=key)
    return amount


def require_str(payload: dict, key: str, *, max_length: int = 255) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{key} is required", field=key)
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} must be at most {max_length} characters", field=key)
    return value


def optional_str(payload: dict, key: str, *, max_length: int = 255) -> str | None:
    if payload.get(key) is None:
        return None
    value = str(payload[key]).strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} must be at most {max_length} characters", field=key)
    return value or None


def optional_datetime(payload: dict, key: str) -> datetime | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be an ISO-8601 datetime", field=key)
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime", field=key)


def require_list(payload: dict, key: str) -> list:
    value = payload.get(key)
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list", field=key)
    return value
