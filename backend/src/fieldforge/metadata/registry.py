"""Immutable, load-once catalog of entity capabilities."""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Literal

from fieldforge.core.errors import UnknownEntityError
from fieldforge.metadata.loader import EntityMetadata, MetadataLoader

FieldKind = Literal["search", "filter", "sort"]


class EntityMetadataRegistry:
    """Read-only lookup from entity name to EntityMetadata.

    The registry is populated once at construction and never mutated, so
    concurrent requests read it without locking.
    """

    def __init__(self, entities: Iterable[EntityMetadata]):
        catalog: dict[str, EntityMetadata] = {}
        for entity in entities:
            if entity.name in catalog:
                raise ValueError(f"Duplicate entity '{entity.name}'")
            catalog[entity.name] = entity
        self._entities = MappingProxyType(catalog)

    @classmethod
    def from_path(cls, metadata_path: Path | None = None) -> EntityMetadataRegistry:
        """Load every entity YAML under ``metadata_path`` (package default if omitted)."""
        loader = MetadataLoader(metadata_path)
        loader.load_all()
        return cls(loader.entities.values())

    def get(self, entity_name: str) -> EntityMetadata:
        """Return the metadata for an entity.

        Raises:
            UnknownEntityError: If no entity is registered under that name
        """
        entity = self._entities.get(entity_name)
        if entity is None:
            raise UnknownEntityError(entity_name)
        return entity

    def validate_field(self, entity_name: str, field: str, kind: FieldKind) -> bool:
        """Return whether ``field`` is allow-listed for ``kind`` on the entity."""
        entity = self.get(entity_name)
        if kind == "search":
            return field in entity.searchable_fields
        if kind == "filter":
            return field in entity.filterable_fields
        if kind == "sort":
            return field in entity.sortable_fields
        return False

    def for_table(self, table_name: str) -> EntityMetadata | None:
        """Entity stored in ``table_name``, if one is registered."""
        for entity in self._entities.values():
            if entity.table_name == table_name:
                return entity
        return None

    def list_entities(self) -> list[str]:
        return sorted(self._entities)

    def __contains__(self, entity_name: object) -> bool:
        return entity_name in self._entities

    def __len__(self) -> int:
        return len(self._entities)
