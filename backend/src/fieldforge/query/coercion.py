"""Coerce request values to the declared field type before binding."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String
from sqlalchemy.types import TypeEngine

from fieldforge.core.errors import ValidationError

_TRUE = frozenset({"true", "1", "yes", "on"})
_FALSE = frozenset({"false", "0", "no", "off"})

# Signed 64-bit range shared by SQLite INTEGER and PostgreSQL BIGINT.
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def sql_type(field_type: str) -> TypeEngine:
    """SQLAlchemy bind type for a metadata field type."""
    if field_type == "integer":
        return Integer()
    if field_type == "decimal":
        return Numeric(asdecimal=True)
    if field_type == "boolean":
        return Boolean()
    if field_type == "timestamp":
        return DateTime(timezone=True)
    if field_type == "date":
        return Date()
    return String()


def _invalid(field: str, field_type: str, value: Any) -> ValidationError:
    return ValidationError(
        f"Invalid value for '{field}': expected {field_type}",
        details={"field": field, "value": str(value)[:100]},
    )


def coerce_value(field: str, field_type: str, value: Any) -> Any:
    """Convert ``value`` to the Python type matching ``field_type``.

    ``None`` passes through unchanged. Timestamps are normalized to UTC and
    integers must fit in a signed 64-bit column.

    Raises:
        ValidationError: If the value cannot represent the field type
    """
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple, set)):
        raise _invalid(field, field_type, value)

    if field_type == "integer":
        if isinstance(value, bool):
            raise _invalid(field, field_type, value)
        if isinstance(value, int):
            result = value
        elif isinstance(value, float) and value.is_integer():
            result = int(value)
        else:
            try:
                result = int(str(value).strip())
            except ValueError:
                raise _invalid(field, field_type, value)
        if not INT64_MIN <= result <= INT64_MAX:
            raise _invalid(field, field_type, value)
        return result

    if field_type == "decimal":
        if isinstance(value, bool):
            raise _invalid(field, field_type, value)
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise _invalid(field, field_type, value)
        if not result.is_finite():
            raise _invalid(field, field_type, value)
        return result

    if field_type == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise _invalid(field, field_type, value)

    if field_type == "timestamp":
        if isinstance(value, datetime):
            parsed = value
        else:
            text = str(value).strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                raise _invalid(field, field_type, value)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)

    if field_type == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value).strip())
        except ValueError:
            raise _invalid(field, field_type, value)

    if isinstance(value, bool):
        raise _invalid(field, field_type, value)
    return str(value)
