"""Allow-list driven translation of request parameters into parameterized SQL.

Identifiers in the generated SQL come only from entity metadata, which is
validated at load time. Every caller-supplied value is a bound parameter
whose name depends on its position, never on its content, so adversarial
values cannot change the text or the parameter count of a query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.types import TypeEngine

from fieldforge.core.errors import ValidationError
from fieldforge.metadata.loader import IDENTIFIER_RE, EntityMetadata, Relationship
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.coercion import INT64_MAX, coerce_value, sql_type

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
MAX_IN_VALUES = 100
MAX_SEARCH_LENGTH = 200

_COMPARISONS = {
    "eq": "=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "not": "<>",
}
FILTER_OPERATORS = frozenset({*_COMPARISONS, "in"})
SORT_ORDERS = ("asc", "desc")

# Related belongs_to columns come back as "<relationship>__<field>"
RELATED_SEPARATOR = "__"
PARENT_KEY = "__parent_id"


@dataclass(frozen=True)
class RowConstraint:
    """Predicate ``field = value`` AND-ed into every query for the request."""

    field: str
    value: Any


@dataclass(frozen=True)
class QueryParams:
    """Validated shape of a list request. Values are still untrusted."""

    search: str | None = None
    filters: Mapping[str, Any] = field(default_factory=dict)
    sort: str | None = None
    order: str | None = None
    page: int | None = 1
    limit: int | None = None
    include: tuple[str, ...] = ()


@dataclass
class BuiltQuery:
    """SQL text plus the values to bind into it."""

    sql: str
    params: dict[str, Any]
    bind_types: dict[str, TypeEngine] = field(default_factory=dict)
    expanding: frozenset[str] = frozenset()
    count_sql: str | None = None
    count_params: dict[str, Any] = field(default_factory=dict)
    page: int = 1
    limit: int = 0
    offset: int = 0
    joins: tuple[Relationship, ...] = ()
    has_many: tuple[Relationship, ...] = ()

    def statement(self) -> TextClause:
        return self._text(self.sql, self.params)

    def count_statement(self) -> TextClause:
        if self.count_sql is None:
            raise ValueError("Query has no count statement")
        return self._text(self.count_sql, self.count_params)

    def _text(self, sql: str, params: Mapping[str, Any]) -> TextClause:
        binds = [
            bindparam(name, type_=self.bind_types.get(name), expanding=name in self.expanding)
            for name in params
        ]
        return text(sql).bindparams(*binds)


def quote(identifier: str) -> str:
    """Quote a metadata identifier. Anything else is a programming error."""
    if not IDENTIFIER_RE.match(identifier):
        raise ValueError(f"Refusing to quote unsafe identifier {identifier!r}")
    return f'"{identifier}"'


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class _Binds:
    """Collects bound values under positional names."""

    def __init__(self, types: dict[str, TypeEngine], expanding: set[str]):
        self.values: dict[str, Any] = {}
        self._types = types
        self._expanding = expanding

    def add(self, name: str, value: Any, type_: TypeEngine | None = None,
            expanding: bool = False) -> str:
        if name in self.values:
            raise ValueError(f"Duplicate bind parameter '{name}'")
        self.values[name] = value
        if type_ is not None:
            self._types[name] = type_
        if expanding:
            self._expanding.add(name)
        return f":{name}"


class QueryBuilder:
    """Builds parameterized SELECT, INSERT, UPDATE and DELETE statements.

    Allow-list membership is always decided by the registry; the builder
    only decides how an accepted request becomes SQL.
    """

    def __init__(
        self,
        registry: EntityMetadataRegistry,
        default_limit: int = DEFAULT_LIMIT,
        max_limit: int = MAX_LIMIT,
    ):
        if default_limit < 1 or max_limit < default_limit:
            raise ValueError("Invalid pagination bounds")
        self._registry = registry
        self.default_limit = default_limit
        self.max_limit = max_limit

    # ------------------------------------------------------------------
    # SELECT
    # ------------------------------------------------------------------

    def build(
        self,
        metadata: EntityMetadata,
        params: QueryParams,
        row_constraint: RowConstraint | None = None,
        *,
        elevated: bool = False,
        include_constraints: Mapping[str, RowConstraint] | None = None,
    ) -> BuiltQuery:
        """Translate a list request into a paginated query with a count query.

        Raises:
            ValidationError: On any field, operator, sort or pagination
                value outside what the metadata allows
        """
        page, limit = self._paginate(params.page, params.limit)
        joins, has_many = self._resolve_includes(metadata, params.include)
        sort_field, order = self._resolve_sort(metadata, params.sort, params.order, elevated)

        types: dict[str, TypeEngine] = {}
        expanding: set[str] = set()
        where = _Binds(types, expanding)
        clauses: list[str] = []

        search_clause = self._search_clause(metadata, params.search, where)
        if search_clause:
            clauses.append(search_clause)
        clauses.extend(self._filter_clauses(metadata, params.filters, elevated, where))
        if row_constraint is not None:
            clauses.append(self._constraint_clause(metadata, row_constraint, where, "rls_owner"))

        join_binds = _Binds(types, expanding)
        select_sql = self._select_from(metadata, joins, include_constraints or {}, join_binds)
        where_sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        table = quote(metadata.table_name)
        direction = order.upper()
        order_sql = f" ORDER BY {table}.{quote(sort_field)} {direction}"
        if sort_field != metadata.primary_key:
            order_sql += f", {table}.{quote(metadata.primary_key)} {direction}"

        offset = (page - 1) * limit
        data_params = {**where.values, **join_binds.values, "limit": limit, "offset": offset}

        return BuiltQuery(
            sql=f"{select_sql}{where_sql}{order_sql} LIMIT :limit OFFSET :offset",
            params=data_params,
            bind_types=types,
            expanding=frozenset(expanding),
            count_sql=f"SELECT COUNT(*) AS total FROM {table}{where_sql}",
            count_params=dict(where.values),
            page=page,
            limit=limit,
            offset=offset,
            joins=joins,
            has_many=has_many,
        )

    def build_lookup(
        self,
        metadata: EntityMetadata,
        key: Any,
        row_constraint: RowConstraint | None = None,
        include: Sequence[str] = (),
        include_constraints: Mapping[str, RowConstraint] | None = None,
    ) -> BuiltQuery:
        """Single-row SELECT by primary key, constrained like a list query."""
        joins, has_many = self._resolve_includes(metadata, include)
        types: dict[str, TypeEngine] = {}
        expanding: set[str] = set()
        where = _Binds(types, expanding)
        clauses = [self._key_clause(metadata, key, where)]
        if row_constraint is not None:
            clauses.append(self._constraint_clause(metadata, row_constraint, where, "rls_owner"))

        join_binds = _Binds(types, expanding)
        select_sql = self._select_from(metadata, joins, include_constraints or {}, join_binds)
        return BuiltQuery(
            sql=f"{select_sql} WHERE {' AND '.join(clauses)}",
            params={**where.values, **join_binds.values},
            bind_types=types,
            expanding=frozenset(expanding),
            limit=1,
            joins=joins,
            has_many=has_many,
        )

    def build_related(
        self,
        relationship: Relationship,
        parent_ids: Iterable[Any],
        row_constraint: RowConstraint | None = None,
    ) -> BuiltQuery:
        """Fetch ``has_many`` rows for a page of parents in one query."""
        if relationship.type != "has_many":
            raise ValueError(f"Relationship '{relationship.name}' is not has_many")

        related = self._registry.for_table(relationship.table)
        types: dict[str, TypeEngine] = {}
        expanding: set[str] = set()
        binds = _Binds(types, expanding)

        table = quote(relationship.table)
        fk = f"{table}.{quote(relationship.foreign_key)}"
        columns = [f"{fk} AS {quote(PARENT_KEY)}"]
        columns.extend(f"{table}.{quote(f)}" for f in relationship.fields)

        fk_type = related.field_type(relationship.foreign_key) if related else "integer"
        ids = [coerce_value(relationship.foreign_key, fk_type, v) for v in parent_ids]
        clauses = [f"{fk} IN {binds.add('parent_ids', ids, sql_type(fk_type), expanding=True)}"]
        if row_constraint is not None:
            constraint_type = related.field_type(row_constraint.field) if related else "integer"
            placeholder = binds.add("rls_owner", row_constraint.value, sql_type(constraint_type))
            clauses.append(f"{table}.{quote(row_constraint.field)} = {placeholder}")

        return BuiltQuery(
            sql=(
                f"SELECT {', '.join(columns)} FROM {table} WHERE {' AND '.join(clauses)} "
                f"ORDER BY {table}.{quote(relationship.primary_key)} ASC"
            ),
            params=binds.values,
            bind_types=types,
            expanding=frozenset(expanding),
        )

    # ------------------------------------------------------------------
    # INSERT / UPDATE / DELETE
    # ------------------------------------------------------------------

    def build_insert(self, metadata: EntityMetadata, values: Mapping[str, Any]) -> BuiltQuery:
        if not values:
            raise ValidationError("No fields to insert")
        types: dict[str, TypeEngine] = {}
        binds = _Binds(types, set())
        columns: list[str] = []
        placeholders: list[str] = []
        for index, (name, value) in enumerate(values.items()):
            self._require_declared(metadata, name)
            field_type = metadata.field_type(name)
            columns.append(quote(name))
            placeholders.append(
                binds.add(f"v_{index}", coerce_value(name, field_type, value), sql_type(field_type))
            )
        table = quote(metadata.table_name)
        return BuiltQuery(
            sql=(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) "
                f"RETURNING {quote(metadata.primary_key)}"
            ),
            params=binds.values,
            bind_types=types,
        )

    def build_update(
        self,
        metadata: EntityMetadata,
        key: Any,
        values: Mapping[str, Any],
        row_constraint: RowConstraint | None = None,
    ) -> BuiltQuery:
        if not values:
            raise ValidationError("No fields to update")
        types: dict[str, TypeEngine] = {}
        binds = _Binds(types, set())
        assignments: list[str] = []
        for index, (name, value) in enumerate(values.items()):
            self._require_declared(metadata, name)
            field_type = metadata.field_type(name)
            placeholder = binds.add(
                f"v_{index}", coerce_value(name, field_type, value), sql_type(field_type)
            )
            assignments.append(f"{quote(name)} = {placeholder}")
        clauses = [self._key_clause(metadata, key, binds)]
        if row_constraint is not None:
            clauses.append(self._constraint_clause(metadata, row_constraint, binds, "rls_owner"))
        return BuiltQuery(
            sql=(
                f"UPDATE {quote(metadata.table_name)} SET {', '.join(assignments)} "
                f"WHERE {' AND '.join(clauses)}"
            ),
            params=binds.values,
            bind_types=types,
        )

    def build_delete(
        self,
        metadata: EntityMetadata,
        key: Any,
        row_constraint: RowConstraint | None = None,
    ) -> BuiltQuery:
        types: dict[str, TypeEngine] = {}
        binds = _Binds(types, set())
        clauses = [self._key_clause(metadata, key, binds)]
        if row_constraint is not None:
            clauses.append(self._constraint_clause(metadata, row_constraint, binds, "rls_owner"))
        return BuiltQuery(
            sql=f"DELETE FROM {quote(metadata.table_name)} WHERE {' AND '.join(clauses)}",
            params=binds.values,
            bind_types=types,
        )

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def project(
        self,
        metadata: EntityMetadata,
        rows: Iterable[Mapping[str, Any]],
        joins: Sequence[Relationship] = (),
    ) -> list[dict[str, Any]]:
        """Nest joined columns and drop excluded fields from every row."""
        results = []
        for row in rows:
            record = dict(row)
            for rel in joins:
                nested = {
                    f: record.pop(f"{rel.name}{RELATED_SEPARATOR}{f}", None) for f in rel.fields
                }
                if all(v is None for v in nested.values()):
                    record[rel.name] = None
                else:
                    record[rel.name] = self.strip_excluded_related(rel, nested)
            for excluded in metadata.excluded_fields:
                record.pop(excluded, None)
            results.append(record)
        return results

    def strip_excluded_related(self, rel: Relationship, record: dict[str, Any]) -> dict[str, Any]:
        related = self._registry.for_table(rel.table)
        if related is not None:
            for excluded in related.excluded_fields:
                record.pop(excluded, None)
        return record

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _paginate(self, page: Any, limit: Any) -> tuple[int, int]:
        page = 1 if page is None else page
        limit = self.default_limit if limit is None else limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= self.max_limit:
            raise ValidationError(
                f"limit must be an integer between 1 and {self.max_limit}",
                details={"limit": str(limit)},
            )
        max_page = INT64_MAX // limit
        if isinstance(page, bool) or not isinstance(page, int) or not 1 <= page <= max_page:
            raise ValidationError(
                f"page must be an integer between 1 and {max_page}",
                details={"page": str(page)[:100]},
            )
        return page, limit

    def _resolve_sort(
        self,
        metadata: EntityMetadata,
        sort: str | None,
        order: str | None,
        elevated: bool,
    ) -> tuple[str, str]:
        if sort:
            if not self._registry.validate_field(metadata.name, sort, "sort"):
                raise ValidationError(
                    f"Field '{sort}' is not sortable", details={"field": sort}
                )
            if sort in metadata.restricted_fields and not elevated:
                raise ValidationError(
                    f"Field '{sort}' is not sortable", details={"field": sort}
                )
            default_order = "asc"
        else:
            sort = metadata.default_sort.field
            default_order = metadata.default_sort.order

        direction = (order or default_order).strip().lower()
        if direction not in SORT_ORDERS:
            raise ValidationError("order must be 'asc' or 'desc'", details={"order": str(order)})
        return sort, direction

    def _resolve_includes(
        self, metadata: EntityMetadata, include: Sequence[str]
    ) -> tuple[tuple[Relationship, ...], tuple[Relationship, ...]]:
        joins: list[Relationship] = []
        has_many: list[Relationship] = []
        seen: set[str] = set()
        for name in include:
            if name in seen:
                continue
            seen.add(name)
            rel = metadata.relationships.get(name)
            if rel is None:
                raise ValidationError(
                    f"Unknown relationship '{name}' for {metadata.name}",
                    details={"include": name},
                )
            (joins if rel.type == "belongs_to" else has_many).append(rel)
        return tuple(joins), tuple(has_many)

    def _select_from(
        self,
        metadata: EntityMetadata,
        joins: Sequence[Relationship],
        include_constraints: Mapping[str, RowConstraint],
        binds: _Binds,
    ) -> str:
        table = quote(metadata.table_name)
        columns = [f"{table}.{quote(f)}" for f in metadata.fields]
        from_sql = table
        for index, rel in enumerate(joins):
            alias = quote(rel.name)
            columns.extend(
                f"{alias}.{quote(f)} AS {quote(rel.name + RELATED_SEPARATOR + f)}"
                for f in rel.fields
            )
            on = f"{alias}.{quote(rel.primary_key)} = {table}.{quote(rel.foreign_key)}"
            constraint = include_constraints.get(rel.name)
            if constraint is not None:
                related = self._registry.for_table(rel.table)
                constraint_type = related.field_type(constraint.field) if related else "integer"
                placeholder = binds.add(
                    f"rls_join_{index}", constraint.value, sql_type(constraint_type)
                )
                on += f" AND {alias}.{quote(constraint.field)} = {placeholder}"
            from_sql += f" LEFT JOIN {quote(rel.table)} AS {alias} ON {on}"
        return f"SELECT {', '.join(columns)} FROM {from_sql}"

    def _search_clause(
        self, metadata: EntityMetadata, search: str | None, binds: _Binds
    ) -> str | None:
        if search is None:
            return None
        if not isinstance(search, str):
            raise ValidationError("search must be a string")
        term = search.strip()
        if not term:
            return None
        if not metadata.searchable_fields:
            raise ValidationError(f"{metadata.name} does not support search")
        if len(term) > MAX_SEARCH_LENGTH:
            raise ValidationError(f"search must be at most {MAX_SEARCH_LENGTH} characters")

        placeholder = binds.add("search", f"%{_escape_like(term.lower())}%", sql_type("string"))
        table = quote(metadata.table_name)
        matches = [
            f"LOWER({table}.{quote(f)}) LIKE {placeholder} ESCAPE '\\'"
            for f in metadata.searchable_fields
        ]
        return f"({' OR '.join(matches)})"

    def _filter_clauses(
        self,
        metadata: EntityMetadata,
        filters: Mapping[str, Any] | None,
        elevated: bool,
        binds: _Binds,
    ) -> list[str]:
        if not filters:
            return []
        if not isinstance(filters, Mapping):
            raise ValidationError("filters must be an object of field conditions")

        table = quote(metadata.table_name)
        clauses: list[str] = []
        index = 0
        for field_name, criteria in filters.items():
            if not isinstance(field_name, str) or not self._registry.validate_field(
                metadata.name, field_name, "filter"
            ):
                raise ValidationError(
                    f"Field '{field_name}' is not filterable", details={"field": str(field_name)}
                )
            if field_name in metadata.restricted_fields and not elevated:
                raise ValidationError(
                    f"Field '{field_name}' is not filterable", details={"field": field_name}
                )

            field_type = metadata.field_type(field_name)
            column = f"{table}.{quote(field_name)}"
            for operator, value in self._conditions(field_name, criteria):
                name = f"f_{index}"
                index += 1
                clauses.append(
                    self._condition(column, field_name, field_type, operator, value, name, binds)
                )
        return clauses

    @staticmethod
    def _conditions(field_name: str, criteria: Any) -> list[tuple[str, Any]]:
        if isinstance(criteria, Mapping):
            if not criteria:
                raise ValidationError(f"Empty filter for '{field_name}'")
            conditions = []
            for operator, value in criteria.items():
                if operator not in FILTER_OPERATORS:
                    raise ValidationError(
                        f"Unsupported filter operator '{operator}'",
                        details={"field": field_name, "operator": str(operator)},
                    )
                conditions.append((operator, value))
            return conditions
        return [("eq", criteria)]

    @staticmethod
    def _condition(
        column: str,
        field_name: str,
        field_type: str,
        operator: str,
        value: Any,
        name: str,
        binds: _Binds,
    ) -> str:
        if operator == "in":
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            if not isinstance(value, (list, tuple)) or not value:
                raise ValidationError(f"'in' filter for '{field_name}' needs a non-empty list")
            if len(value) > MAX_IN_VALUES:
                raise ValidationError(
                    f"'in' filter for '{field_name}' accepts at most {MAX_IN_VALUES} values"
                )
            if any(v is None for v in value):
                raise ValidationError(f"'in' filter for '{field_name}' cannot contain null")
            coerced = [coerce_value(field_name, field_type, v) for v in value]
            placeholder = binds.add(name, coerced, sql_type(field_type), expanding=True)
            return f"{column} IN {placeholder}"

        if value is None:
            if operator == "eq":
                return f"{column} IS NULL"
            if operator == "not":
                return f"{column} IS NOT NULL"
            raise ValidationError(f"'{operator}' filter for '{field_name}' cannot be null")

        if isinstance(value, (list, tuple, dict)):
            raise ValidationError(
                f"'{operator}' filter for '{field_name}' needs a single value"
            )
        placeholder = binds.add(
            name, coerce_value(field_name, field_type, value), sql_type(field_type)
        )
        return f"{column} {_COMPARISONS[operator]} {placeholder}"

    def _key_clause(self, metadata: EntityMetadata, key: Any, binds: _Binds) -> str:
        pk = metadata.primary_key
        pk_type = metadata.field_type(pk)
        try:
            value = coerce_value(pk, pk_type, key)
        except ValidationError:
            raise ValidationError(f"Invalid {metadata.name} id", details={"id": str(key)[:100]})
        placeholder = binds.add("key", value, sql_type(pk_type))
        return f"{quote(metadata.table_name)}.{quote(pk)} = {placeholder}"

    @staticmethod
    def _constraint_clause(
        metadata: EntityMetadata, constraint: RowConstraint, binds: _Binds, name: str
    ) -> str:
        if constraint.field not in metadata.fields:
            raise ValueError(
                f"Row constraint field '{constraint.field}' is not declared on {metadata.name}"
            )
        field_type = metadata.field_type(constraint.field)
        placeholder = binds.add(name, constraint.value, sql_type(field_type))
        return f"{quote(metadata.table_name)}.{quote(constraint.field)} = {placeholder}"

    @staticmethod
    def _require_declared(metadata: EntityMetadata, name: str) -> None:
        if name not in metadata.fields:
            raise ValidationError(
                f"Unknown field '{name}' for {metadata.name}", details={"field": str(name)}
            )
