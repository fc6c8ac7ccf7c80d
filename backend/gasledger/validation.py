from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(ValidationError):
    """404-level: a referenced product, employee, customer or document is unknown."""


class InsufficientStockError(ValidationError):
    """Requested quantity exceeds what the stock view holds at read time."""


class MissingAssignmentError(ValidationError):
    """Employee has no eligible assignment to price a sale from."""


class AssignmentPoolExhaustedError(ValidationError):
    """Assignment pool cannot cover a sale and oversell is configured off."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., a state transition lost a race)."""


def require_positive_int(payload: dict, key: str) -> int:
    """Strict integer coercion: rejects bools, floats and decimal strings."""
    value = payload.get(key)
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{key} must be a positive integer")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped.isdigit():
            raise ValidationError(f"{key} must be a positive integer")
        value = int(stripped)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{key} must be a positive integer")
    return value


def optional_int(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return require_positive_int(payload, key)


def optional_str(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def optional_bool(payload: dict, key: str, default: bool = False) -> bool:
    """JSON booleans only; the string "false" is an error, not True."""
    value = payload.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value


def ensure_quantity(quantity: Any, *, field: str = "quantity") -> int:
    """Service-side guard; routes already coerce, direct callers may not."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return quantity
