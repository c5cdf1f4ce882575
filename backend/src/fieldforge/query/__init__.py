"""Metadata-driven query construction."""

from fieldforge.query.builder import (
    FILTER_OPERATORS,
    BuiltQuery,
    QueryBuilder,
    QueryParams,
    RowConstraint,
)
from fieldforge.query.coercion import coerce_value

__all__ = [
    "FILTER_OPERATORS",
    "BuiltQuery",
    "QueryBuilder",
    "QueryParams",
    "RowConstraint",
    "coerce_value",
]
