"""Tests for allow-list driven SQL construction."""

from decimal import Decimal

import pytest

from fieldforge.core.errors import ValidationError
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.builder import MAX_IN_VALUES, QueryBuilder, QueryParams, RowConstraint, quote
from fieldforge.query.coercion import coerce_value


@pytest.fixture
def work_order(registry):
    return registry.get("work_order")


def run(engine, query):
    with engine.connect() as conn:
        return conn.execute(query.statement(), query.params).mappings().all()


# ── Defaults ─────────────────────────────────────────────────────────────────


class TestDefaults:
    def test_default_sort_and_pagination(self, builder, work_order):
        query = builder.build(work_order, QueryParams())
        assert query.sql.endswith(
            'ORDER BY "work_orders"."created_at" DESC, "work_orders"."id" DESC '
            "LIMIT :limit OFFSET :offset"
        )
        assert query.params == {"limit": 50, "offset": 0}
        assert "WHERE" not in query.sql

    def test_selects_only_declared_columns(self, builder, work_order):
        query = builder.build(work_order, QueryParams())
        select_list = query.sql.split(" FROM ")[0]
        assert select_list.count('"work_orders".') == len(work_order.fields)
        assert "*" not in select_list

    def test_count_query_shares_where_but_not_pagination(self, builder, work_order):
        query = builder.build(work_order, QueryParams(filters={"status": "pending"}, page=2))
        assert query.count_sql == (
            'SELECT COUNT(*) AS total FROM "work_orders" WHERE "work_orders"."status" = :f_0'
        )
        assert query.count_params == {"f_0": "pending"}

    def test_explicit_sort_defaults_to_ascending(self, builder, work_order):
        query = builder.build(work_order, QueryParams(sort="name"))
        assert 'ORDER BY "work_orders"."name" ASC, "work_orders"."id" ASC' in query.sql

    def test_order_is_case_insensitive(self, builder, work_order):
        query = builder.build(work_order, QueryParams(sort="id", order="DESC"))
        assert 'ORDER BY "work_orders"."id" DESC LIMIT' in query.sql


# ── Allow-list rejection ─────────────────────────────────────────────────────


class TestAllowList:
    def test_unfilterable_field_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="not filterable"):
            builder.build(work_order, QueryParams(filters={"summary": "x"}))

    def test_undeclared_filter_field_rejected(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(filters={"1=1 OR id": 1}))

    def test_unsortable_field_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="not sortable"):
            builder.build(work_order, QueryParams(sort="summary"))

    def test_sort_injection_rejected(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(sort="id; DROP TABLE work_orders"))

    def test_invalid_order_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="order"):
            builder.build(work_order, QueryParams(sort="id", order="sideways"))

    def test_unknown_operator_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="operator"):
            builder.build(work_order, QueryParams(filters={"status": {"like": "%"}}))

    def test_unknown_include_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="relationship"):
            builder.build(work_order, QueryParams(include=("payments",)))

    def test_restricted_field_needs_elevation(self, builder, registry):
        technician = registry.get("technician")
        params = QueryParams(filters={"hourly_rate": {"gt": 50}}, sort="hourly_rate")
        with pytest.raises(ValidationError):
            builder.build(technician, params)
        query = builder.build(technician, params, elevated=True)
        assert '"technicians"."hourly_rate" > :f_0' in query.sql
        assert query.params["f_0"] == Decimal("50")

    def test_search_on_entity_without_searchable_fields(self, builder, tmp_path):
        entities = tmp_path / "entities"
        entities.mkdir()
        (entities / "tag.yaml").write_text(
            "entity: tag\ntable: tags\nfields:\n  id: integer\n  label: string\n"
            "rls:\n  policy:\n    admin: all_records\n"
        )
        registry = EntityMetadataRegistry.from_path(tmp_path)
        with pytest.raises(ValidationError, match="search"):
            QueryBuilder(registry).build(registry.get("tag"), QueryParams(search="x"))


# ── Pagination ───────────────────────────────────────────────────────────────


class TestPagination:
    @pytest.mark.parametrize("page", [0, -1, "2", True])
    def test_invalid_page(self, builder, work_order, page):
        with pytest.raises(ValidationError, match="page"):
            builder.build(work_order, QueryParams(page=page))

    @pytest.mark.parametrize("limit", [0, 201, 10_000])
    def test_limit_out_of_bounds(self, builder, work_order, limit):
        with pytest.raises(ValidationError, match="limit"):
            builder.build(work_order, QueryParams(limit=limit))

    def test_offset_from_page(self, builder, work_order):
        query = builder.build(work_order, QueryParams(page=3, limit=10))
        assert (query.page, query.limit, query.offset) == (3, 10, 20)
        assert query.params["offset"] == 20

    def test_configured_bounds(self, registry, work_order):
        builder = QueryBuilder(registry, default_limit=5, max_limit=20)
        assert builder.build(work_order, QueryParams()).limit == 5
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(limit=21))

    def test_page_beyond_offset_range(self, builder, work_order):
        with pytest.raises(ValidationError, match="page"):
            builder.build(work_order, QueryParams(page=10**30, limit=10))

    def test_largest_page_keeps_offset_in_range(self, builder, work_order):
        page = (2**63 - 1) // 10
        query = builder.build(work_order, QueryParams(page=page, limit=10))
        assert query.offset < 2**63
        with pytest.raises(ValidationError, match="page"):
            builder.build(work_order, QueryParams(page=page + 1, limit=10))

    @pytest.mark.parametrize("filters", [{"id": 10**30}, {"id": {"in": [1, 10**30]}}])
    def test_oversized_integer_filter(self, builder, work_order, filters):
        with pytest.raises(ValidationError, match="'id'"):
            builder.build(work_order, QueryParams(filters=filters))


# ── Filters, search and parameter binding ────────────────────────────────────


class TestBinding:
    def test_shape_is_independent_of_values(self, builder, work_order):
        benign = builder.build(
            work_order,
            QueryParams(search="sink", filters={"status": "pending", "name": {"not": "x"}}),
        )
        hostile = builder.build(
            work_order,
            QueryParams(
                search="'; DROP TABLE work_orders; --",
                filters={"status": "' OR '1'='1", "name": {"not": "\" OR 1=1 --"}},
            ),
        )
        assert benign.sql == hostile.sql
        assert benign.count_sql == hostile.count_sql
        assert benign.params.keys() == hostile.params.keys()
        assert "DROP" not in hostile.sql
        assert hostile.params["f_0"] == "' OR '1'='1"

    def test_search_escapes_like_wildcards(self, builder, work_order):
        query = builder.build(work_order, QueryParams(search="  50%_Off\\ "))
        assert query.params["search"] == "%50\\%\\_off\\\\%"
        assert "ESCAPE" in query.sql
        assert query.sql.count(":search") == len(work_order.searchable_fields)

    def test_blank_search_ignored(self, builder, work_order):
        query = builder.build(work_order, QueryParams(search="   "))
        assert "search" not in query.params

    def test_search_length_capped(self, builder, work_order):
        with pytest.raises(ValidationError, match="search"):
            builder.build(work_order, QueryParams(search="x" * 201))

    def test_comparison_operators(self, builder, work_order):
        query = builder.build(
            work_order,
            QueryParams(filters={"scheduled_start": {"gte": "2024-01-01T00:00:00Z", "lt": "2024-02-01"}}),
        )
        assert '"work_orders"."scheduled_start" >= :f_0' in query.sql
        assert '"work_orders"."scheduled_start" < :f_1' in query.sql
        assert query.params["f_0"].tzinfo is not None

    def test_value_coerced_to_field_type(self, builder, work_order):
        query = builder.build(work_order, QueryParams(filters={"customer_id": "7"}))
        assert query.params["f_0"] == 7

    def test_uncoercible_value_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="customer_id"):
            builder.build(work_order, QueryParams(filters={"customer_id": "seven"}))

    def test_null_equality_becomes_is_null(self, builder, work_order):
        query = builder.build(
            work_order,
            QueryParams(filters={"assigned_technician_id": None, "customer_id": {"not": None}}),
        )
        assert '"work_orders"."assigned_technician_id" IS NULL' in query.sql
        assert '"work_orders"."customer_id" IS NOT NULL' in query.sql

    def test_null_with_ordering_operator_rejected(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(filters={"customer_id": {"gt": None}}))

    def test_in_filter_uses_one_expanding_parameter(self, builder, work_order):
        short = builder.build(work_order, QueryParams(filters={"status": {"in": ["a"]}}))
        long = builder.build(work_order, QueryParams(filters={"status": {"in": ["a", "b", "c"]}}))
        assert short.sql == long.sql
        assert "f_0" in long.expanding
        assert long.params["f_0"] == ["a", "b", "c"]

    def test_in_filter_accepts_comma_string(self, builder, work_order):
        query = builder.build(work_order, QueryParams(filters={"id": {"in": "1, 2,3"}}))
        assert query.params["f_0"] == [1, 2, 3]

    def test_in_filter_accepts_single_value(self, builder, work_order):
        query = builder.build(work_order, QueryParams(filters={"status": {"in": "pending"}}))
        assert query.params["f_0"] == ["pending"]

    @pytest.mark.parametrize("values", [[], "", [None], list(range(MAX_IN_VALUES + 1))])
    def test_invalid_in_values(self, builder, work_order, values):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(filters={"status": {"in": values}}))

    def test_list_for_scalar_operator_rejected(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(filters={"status": {"eq": ["a", "b"]}}))

    def test_filters_must_be_mapping(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build(work_order, QueryParams(filters=["status"]))


# ── Row constraints ──────────────────────────────────────────────────────────


class TestRowConstraint:
    def test_constraint_is_anded_with_caller_filters(self, builder, work_order):
        query = builder.build(
            work_order,
            QueryParams(filters={"customer_id": 2}),
            RowConstraint("customer_id", 1),
        )
        assert (
            'WHERE "work_orders"."customer_id" = :f_0 AND "work_orders"."customer_id" = :rls_owner'
            in query.sql
        )
        assert query.params["rls_owner"] == 1
        assert query.count_params["rls_owner"] == 1

    def test_constraint_on_lookup_update_and_delete(self, builder, work_order):
        constraint = RowConstraint("customer_id", 1)
        lookup = builder.build_lookup(work_order, "3", constraint)
        update = builder.build_update(work_order, 3, {"name": "x"}, constraint)
        delete = builder.build_delete(work_order, 3, constraint)
        for query in (lookup, update, delete):
            assert '"work_orders"."customer_id" = :rls_owner' in query.sql
            assert query.params["key"] == 3

    def test_filtered_execution_returns_only_owned_rows(self, builder, work_order, engine):
        query = builder.build(work_order, QueryParams(), RowConstraint("customer_id", 1))
        rows = run(engine, query)
        assert {r["id"] for r in rows} == {1, 2}
        assert all(r["customer_id"] == 1 for r in rows)


# ── Relationships and projection ─────────────────────────────────────────────


class TestRelationships:
    def test_belongs_to_left_join(self, builder, work_order):
        query = builder.build(work_order, QueryParams(include=("customer",)))
        assert (
            'LEFT JOIN "customers" AS "customer" ON "customer"."id" = "work_orders"."customer_id"'
            in query.sql
        )
        assert '"customer"."email" AS "customer__email"' in query.sql
        assert '"customer"."notes"' not in query.sql

    def test_include_constraint_goes_into_join(self, builder, work_order):
        query = builder.build(
            work_order,
            QueryParams(include=("customer",)),
            include_constraints={"customer": RowConstraint("id", 1)},
        )
        assert 'AND "customer"."id" = :rls_join_0' in query.sql
        assert query.params["rls_join_0"] == 1
        assert "rls_join_0" not in query.count_params

    def test_has_many_is_a_separate_query(self, builder, work_order):
        query = builder.build(work_order, QueryParams(include=("invoices",)))
        assert "JOIN" not in query.sql
        assert [r.name for r in query.has_many] == ["invoices"]

        related = builder.build_related(query.has_many[0], [1, 3])
        assert '"invoices"."work_order_id" IN :parent_ids' in related.sql
        assert related.params["parent_ids"] == [1, 3]
        assert "parent_ids" in related.expanding

    def test_join_execution_nests_related_record(self, builder, work_order, engine):
        query = builder.build(
            work_order,
            QueryParams(include=("customer", "assignedTechnician"), sort="id"),
        )
        records = builder.project(work_order, run(engine, query), query.joins)
        first = records[0]
        assert first["customer"]["email"] == "alice@example.com"
        assert first["assignedTechnician"]["first_name"] == "Tom"
        unassigned = next(r for r in records if r["id"] == 4)
        assert unassigned["assignedTechnician"] is None
        assert not any("__" in key for key in first)

    def test_projection_strips_excluded_fields(self, builder, registry, engine):
        user = registry.get("user")
        query = builder.build(user, QueryParams(include=("role",)))
        records = builder.project(user, run(engine, query), query.joins)
        assert records
        assert all("auth0_id" not in r for r in records)
        assert {"id", "name", "priority"} == set(records[0]["role"])


# ── Writes ───────────────────────────────────────────────────────────────────


class TestWrites:
    def test_insert_binds_positionally(self, builder, work_order):
        query = builder.build_insert(work_order, {"name": "x", "customer_id": "1"})
        assert query.sql == (
            'INSERT INTO "work_orders" ("name", "customer_id") VALUES (:v_0, :v_1) '
            'RETURNING "id"'
        )
        assert query.params == {"v_0": "x", "v_1": 1}

    def test_update_rejects_undeclared_field(self, builder, work_order):
        with pytest.raises(ValidationError):
            builder.build_update(work_order, 1, {"name = 'x', status": "y"})

    def test_invalid_key_rejected(self, builder, work_order):
        with pytest.raises(ValidationError, match="Invalid work_order id"):
            builder.build_lookup(work_order, "1 OR 1=1")


# ── Helpers ──────────────────────────────────────────────────────────────────


def test_quote_refuses_unsafe_identifier():
    assert quote("work_orders") == '"work_orders"'
    with pytest.raises(ValueError):
        quote('work_orders"; DROP TABLE x; --')


@pytest.mark.parametrize(
    "field_type,value,expected",
    [
        ("integer", "42", 42),
        ("integer", 3.0, 3),
        ("integer", str(2**63 - 1), 2**63 - 1),
        ("decimal", "19.99", Decimal("19.99")),
        ("boolean", "yes", True),
        ("boolean", "0", False),
        ("string", 12, "12"),
    ],
)
def test_coerce_value(field_type, value, expected):
    assert coerce_value("f", field_type, value) == expected


@pytest.mark.parametrize(
    "field_type,value",
    [
        ("integer", True),
        ("integer", "4.5"),
        ("integer", 2**63),
        ("integer", -(2**63) - 1),
        ("integer", "9" * 40),
        ("integer", 1e30),
        ("decimal", "NaN"),
        ("boolean", "maybe"),
        ("date", "yesterday"),
    ],
)
def test_coerce_value_rejects(field_type, value):
    with pytest.raises(ValidationError):
        coerce_value("f", field_type, value)
