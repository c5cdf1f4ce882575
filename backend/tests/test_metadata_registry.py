"""Tests for entity metadata loading, schema validation and the registry."""

import textwrap
from pathlib import Path

import pytest

from fieldforge.core.errors import UnknownEntityError
from fieldforge.metadata.loader import MetadataLoader
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.metadata.validator import validate_metadata_dir, validate_yaml_file

MINIMAL_ENTITY = """\
entity: gadget
table: gadgets
fields:
  id: integer
  name: string
  owner_id: integer
searchable: [name]
filterable: [id, name]
sortable: [id, name]
rls:
  ownerField: owner_id
  policy:
    customer: own_record_only
    admin: all_records
"""


def write_entity(base: Path, content: str, filename: str = "gadget.yaml") -> Path:
    entities = base / "entities"
    entities.mkdir(exist_ok=True)
    path = entities / filename
    path.write_text(textwrap.dedent(content))
    return path


# ── Packaged metadata ────────────────────────────────────────────────────────


class TestPackagedMetadata:
    def test_all_entities_load(self, registry):
        assert registry.list_entities() == [
            "customer",
            "invoice",
            "role",
            "technician",
            "user",
            "work_order",
        ]

    def test_schema_validation_is_clean(self):
        from fieldforge.metadata.loader import DEFAULT_METADATA_PATH

        assert validate_metadata_dir(DEFAULT_METADATA_PATH) == []

    def test_work_order_shape(self, registry):
        wo = registry.get("work_order")
        assert wo.table_name == "work_orders"
        assert wo.display_name == "Work Order"
        assert wo.identity_field == "work_order_number"
        assert wo.default_sort.field == "created_at"
        assert wo.default_sort.order == "desc"
        assert wo.owner_field_for("customer") == "customer_id"
        assert wo.owner_field_for("technician") == "assigned_technician_id"
        assert wo.relationships["customer"].type == "belongs_to"
        assert wo.relationships["invoices"].type == "has_many"

    def test_user_excludes_provider_id(self, registry):
        user = registry.get("user")
        assert "auth0_id" in user.excluded_fields
        assert "role_id" in user.restricted_fields

    def test_writable_fields_skip_system_columns(self, registry):
        writable = registry.get("work_order").writable_fields
        assert {"id", "created_at", "updated_at"}.isdisjoint(writable)
        assert {"status", "customer_id", "assigned_technician_id"} <= writable

    def test_metadata_is_read_only(self, registry):
        wo = registry.get("work_order")
        with pytest.raises(TypeError):
            wo.fields["injected"] = "string"
        with pytest.raises(TypeError):
            wo.rls_policy["customer"] = "all_records"


# ── Registry lookups ─────────────────────────────────────────────────────────


class TestRegistry:
    def test_unknown_entity_raises(self, registry):
        with pytest.raises(UnknownEntityError) as exc_info:
            registry.get("spaceship")
        assert exc_info.value.status_code == 404

    def test_validate_field_by_kind(self, registry):
        assert registry.validate_field("work_order", "name", "search")
        assert registry.validate_field("work_order", "status", "filter")
        assert registry.validate_field("work_order", "priority", "sort")
        assert not registry.validate_field("work_order", "summary", "sort")
        assert not registry.validate_field("work_order", "completed_at", "filter")
        assert not registry.validate_field("work_order", "status", "search")

    def test_validate_field_unknown_entity_raises(self, registry):
        with pytest.raises(UnknownEntityError):
            registry.validate_field("spaceship", "id", "filter")

    def test_for_table(self, registry):
        assert registry.for_table("invoices").name == "invoice"
        assert registry.for_table("audit_log") is None

    def test_contains_and_len(self, registry):
        assert "customer" in registry
        assert "spaceship" not in registry
        assert len(registry) == 6

    def test_duplicate_entities_rejected(self, registry):
        customer = registry.get("customer")
        with pytest.raises(ValueError, match="Duplicate"):
            EntityMetadataRegistry([customer, customer])


# ── Loader rejection ─────────────────────────────────────────────────────────


class TestLoaderValidation:
    def test_minimal_entity_loads(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY)
        registry = EntityMetadataRegistry.from_path(tmp_path)
        gadget = registry.get("gadget")
        assert gadget.display_name == "Gadget"
        assert gadget.default_sort.field == "id"
        assert gadget.default_sort.order == "asc"
        assert gadget.permissions.read == "customer"

    def test_unknown_top_level_key_rejected(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY + "cache: true\n")
        with pytest.raises(ValueError, match="Additional properties"):
            MetadataLoader(tmp_path).load_all()

    def test_unsafe_field_name_rejected(self, tmp_path):
        content = MINIMAL_ENTITY.replace("  name: string", '  "name; DROP TABLE x": string')
        write_entity(tmp_path, content)
        with pytest.raises(ValueError):
            MetadataLoader(tmp_path).load_all()

    def test_sortable_must_reference_declared_field(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY.replace("sortable: [id, name]", "sortable: [id, rank]"))
        with pytest.raises(ValueError, match="unknown field 'rank'"):
            MetadataLoader(tmp_path).load_all()

    def test_searchable_must_be_text(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY.replace("searchable: [name]", "searchable: [owner_id]"))
        with pytest.raises(ValueError, match="not a text field"):
            MetadataLoader(tmp_path).load_all()

    def test_unknown_policy_kind_rejected(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY.replace("admin: all_records", "admin: everything"))
        with pytest.raises(ValueError):
            MetadataLoader(tmp_path).load_all()

    def test_owner_field_must_be_declared(self, tmp_path):
        write_entity(tmp_path, MINIMAL_ENTITY.replace("ownerField: owner_id", "ownerField: tenant_id"))
        with pytest.raises(ValueError, match="owner field 'tenant_id'"):
            MetadataLoader(tmp_path).load_all()

    def test_missing_entities_dir(self, tmp_path):
        with pytest.raises(ValueError, match="not found"):
            MetadataLoader(tmp_path).load_all()


class TestValidator:
    def test_single_file_ok(self, tmp_path):
        path = write_entity(tmp_path, MINIMAL_ENTITY)
        assert validate_yaml_file(path) == []

    def test_missing_rls_reported(self, tmp_path):
        content = MINIMAL_ENTITY.split("rls:")[0]
        path = write_entity(tmp_path, content)
        issues = validate_yaml_file(path)
        assert len(issues) == 1
        assert "'rls' is a required property" in issues[0].message

    def test_empty_file_reported(self, tmp_path):
        path = write_entity(tmp_path, "")
        issues = validate_yaml_file(path)
        assert "empty" in issues[0].message

    def test_bad_yaml_reported(self, tmp_path):
        path = write_entity(tmp_path, "entity: [unclosed\n")
        issues = validate_yaml_file(path)
        assert "YAML parse error" in issues[0].message
