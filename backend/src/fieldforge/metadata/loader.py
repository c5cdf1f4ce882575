"""Load and resolve entity metadata from YAML files."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from fieldforge.metadata.validator import validate_document

logger = logging.getLogger(__name__)

DEFAULT_METADATA_PATH = Path(__file__).parent

# Only these shapes ever reach SQL text as identifiers.
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

FIELD_TYPES = frozenset(
    {"string", "text", "email", "phone", "enum", "integer", "decimal", "boolean", "timestamp", "date"}
)
TEXT_TYPES = frozenset({"string", "text", "email", "phone", "enum"})

POLICY_KINDS = frozenset({"own_record_only", "all_records", "none"})
RELATIONSHIP_TYPES = frozenset({"belongs_to", "has_many"})
OPERATIONS = ("create", "read", "update", "delete")
SYSTEM_FIELDS = frozenset({"id", "created_at", "updated_at"})


@dataclass(frozen=True)
class SortSpec:
    field: str
    order: str = "desc"


@dataclass(frozen=True)
class Relationship:
    """A declared join to another table.

    Attributes:
        name: Relationship key used in ``include`` requests
        type: ``belongs_to`` (FK on this table) or ``has_many`` (FK on the other)
        foreign_key: Column holding the reference
        table: The related table
        fields: The only related columns ever returned
        primary_key: Primary key of the related table (belongs_to joins)
    """

    name: str
    type: str
    foreign_key: str
    table: str
    fields: tuple[str, ...]
    primary_key: str = "id"


@dataclass(frozen=True)
class EntityPermissions:
    """Minimum role per operation."""

    create: str = "dispatcher"
    read: str = "customer"
    update: str = "dispatcher"
    delete: str = "manager"

    def for_operation(self, operation: str) -> str | None:
        return getattr(self, operation, None) if operation in OPERATIONS else None


@dataclass(frozen=True)
class EntityMetadata:
    """Fixed-shape capability record for one business entity."""

    name: str
    display_name: str
    table_name: str
    primary_key: str
    identity_field: str
    fields: Mapping[str, str]
    searchable_fields: tuple[str, ...] = ()
    filterable_fields: tuple[str, ...] = ()
    sortable_fields: tuple[str, ...] = ()
    default_sort: SortSpec = SortSpec("id", "asc")
    excluded_fields: frozenset[str] = frozenset()
    restricted_fields: frozenset[str] = frozenset()
    relationships: Mapping[str, Relationship] = field(default_factory=lambda: MappingProxyType({}))
    rls_policy: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    owner_field: str = "id"
    owner_fields: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    permissions: EntityPermissions = EntityPermissions()
    restricted_min_role: str = "manager"
    required_fields: tuple[str, ...] = ()
    immutable_fields: frozenset[str] = frozenset()

    def owner_field_for(self, role: str) -> str:
        """Column compared against the caller's id under ``own_record_only``."""
        return self.owner_fields.get(role, self.owner_field)

    def field_type(self, name: str) -> str:
        return self.fields.get(name, "string")

    @property
    def writable_fields(self) -> frozenset[str]:
        return frozenset(self.fields) - SYSTEM_FIELDS - {self.primary_key}


class MetadataLoader:
    """Loads entity definitions from ``<metadata_path>/entities/*.yaml``."""

    def __init__(self, metadata_path: Path | None = None):
        self.metadata_path = Path(metadata_path) if metadata_path else DEFAULT_METADATA_PATH
        self.entities: dict[str, EntityMetadata] = {}

    def load_all(self) -> None:
        """Load and validate every entity file."""
        entities_path = self.metadata_path / "entities"
        if not entities_path.exists():
            raise ValueError(f"Metadata directory not found: {entities_path}")

        for yaml_file in sorted(entities_path.glob("*.yaml")):
            with open(yaml_file) as f:
                data = yaml.safe_load(f)
            if not data or "entity" not in data:
                logger.warning("Skipping %s: no 'entity' key", yaml_file)
                continue
            issues = validate_document(data, yaml_file)
            if issues:
                raise ValueError("; ".join(str(issue) for issue in issues))
            entity = self._resolve_entity(data)
            if entity.name in self.entities:
                raise ValueError(f"Duplicate entity '{entity.name}' in {yaml_file}")
            self.entities[entity.name] = entity

        logger.info("Loaded %d entity definitions from %s", len(self.entities), entities_path)

    def _resolve_entity(self, data: dict[str, Any]) -> EntityMetadata:
        """Convert one YAML document into a validated EntityMetadata."""
        name = data["entity"]
        fields = dict(data.get("fields") or {})
        if not fields:
            raise ValueError(f"Entity '{name}' declares no fields")

        for field_name, field_type in fields.items():
            self._check_identifier(name, field_name)
            if field_type not in FIELD_TYPES:
                raise ValueError(
                    f"Entity '{name}' field '{field_name}' has unknown type '{field_type}'"
                )

        table_name = data.get("table", name + "s")
        self._check_identifier(name, table_name)
        primary_key = data.get("primaryKey", "id")
        identity_field = data.get("identityField", primary_key)

        def known(key: str) -> tuple[str, ...]:
            values = tuple(data.get(key) or ())
            for value in values:
                if value not in fields:
                    raise ValueError(f"Entity '{name}' {key} references unknown field '{value}'")
            return values

        searchable = known("searchable")
        for field_name in searchable:
            if fields[field_name] not in TEXT_TYPES:
                raise ValueError(
                    f"Entity '{name}' searchable field '{field_name}' is not a text field"
                )

        sort_data = data.get("defaultSort") or {}
        default_sort = SortSpec(
            field=sort_data.get("field", primary_key),
            order=str(sort_data.get("order", "asc")).lower(),
        )
        if default_sort.order not in ("asc", "desc"):
            raise ValueError(f"Entity '{name}' defaultSort order must be asc or desc")

        entity = EntityMetadata(
            name=name,
            display_name=data.get("displayName", name.replace("_", " ").title()),
            table_name=table_name,
            primary_key=primary_key,
            identity_field=identity_field,
            fields=MappingProxyType(fields),
            searchable_fields=searchable,
            filterable_fields=known("filterable"),
            sortable_fields=known("sortable"),
            default_sort=default_sort,
            excluded_fields=frozenset(known("excluded")),
            restricted_fields=frozenset(known("restricted")),
            relationships=MappingProxyType(
                self._resolve_relationships(name, data.get("relationships") or {})
            ),
            permissions=self._resolve_permissions(data.get("permissions") or {}),
            restricted_min_role=data.get("restrictedMinRole", "manager"),
            required_fields=known("requiredFields"),
            immutable_fields=frozenset(known("immutableFields")),
            **self._resolve_rls(name, data.get("rls") or {}, fields),
        )

        for key in (primary_key, identity_field, default_sort.field):
            if key not in fields:
                raise ValueError(f"Entity '{name}' references unknown field '{key}'")
        return entity

    def _resolve_relationships(
        self, entity_name: str, data: dict[str, Any]
    ) -> dict[str, Relationship]:
        relationships: dict[str, Relationship] = {}
        for rel_name, rel in data.items():
            rel_type = rel.get("type")
            if rel_type not in RELATIONSHIP_TYPES:
                raise ValueError(
                    f"Entity '{entity_name}' relationship '{rel_name}' has unknown type '{rel_type}'"
                )
            fields = tuple(rel.get("fields") or ())
            if not fields:
                raise ValueError(
                    f"Entity '{entity_name}' relationship '{rel_name}' must declare fields"
                )
            relationship = Relationship(
                name=rel_name,
                type=rel_type,
                foreign_key=rel["foreignKey"],
                table=rel["table"],
                fields=fields,
                primary_key=rel.get("primaryKey", "id"),
            )
            for ident in (
                rel_name,
                relationship.foreign_key,
                relationship.table,
                relationship.primary_key,
                *fields,
            ):
                self._check_identifier(entity_name, ident)
            relationships[rel_name] = relationship
        return relationships

    def _resolve_permissions(self, data: dict[str, Any]) -> EntityPermissions:
        unknown = set(data) - set(OPERATIONS)
        if unknown:
            raise ValueError(f"Unknown permission operations: {sorted(unknown)}")
        return EntityPermissions(**data)

    def _resolve_rls(
        self, entity_name: str, data: dict[str, Any], fields: dict[str, str]
    ) -> dict[str, Any]:
        policy = {str(role).lower(): kind for role, kind in (data.get("policy") or {}).items()}
        for role, kind in policy.items():
            if kind not in POLICY_KINDS:
                raise ValueError(
                    f"Entity '{entity_name}' has unknown RLS policy '{kind}' for role '{role}'"
                )

        owner_field = data.get("ownerField", "id")
        owner_fields = {str(r).lower(): f for r, f in (data.get("ownerFields") or {}).items()}
        for column in (owner_field, *owner_fields.values()):
            if column not in fields:
                raise ValueError(
                    f"Entity '{entity_name}' owner field '{column}' is not a declared field"
                )

        return {
            "rls_policy": MappingProxyType(policy),
            "owner_field": owner_field,
            "owner_fields": MappingProxyType(owner_fields),
        }

    @staticmethod
    def _check_identifier(entity_name: str, value: str) -> None:
        if not isinstance(value, str) or not IDENTIFIER_RE.match(value):
            raise ValueError(f"Entity '{entity_name}' has unsafe identifier {value!r}")

    def get_entity(self, name: str) -> EntityMetadata | None:
        """Get a resolved entity by name."""
        return self.entities.get(name)

    def list_entities(self) -> list[str]:
        """List all entity names."""
        return list(self.entities.keys())
