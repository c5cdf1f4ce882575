"""CRUD orchestration for every metadata-described entity.

Each operation resolves permission first, builds its SQL through the
QueryBuilder with the resolved row constraint, and emits an audit event
after a mutation commits.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Mapping, Sequence

from sqlalchemy.engine import Connection, Engine

from fieldforge.auth.permissions import AccessDecision, PermissionResolver
from fieldforge.auth.types import Identity
from fieldforge.core.errors import (
    AuthorizationError,
    ConflictError,
    ForeignKeyViolation,
    NotFoundError,
    ValidationError,
)
from fieldforge.db.engine import database_errors
from fieldforge.db.schema import utcnow
from fieldforge.metadata.loader import EntityMetadata, Relationship
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.builder import PARENT_KEY, QueryBuilder, QueryParams, RowConstraint
from fieldforge.query.coercion import coerce_value
from fieldforge.services.audit import AuditEvent, AuditSink, LoggingAuditSink

logger = logging.getLogger(__name__)


class GenericEntityService:
    """list/get/create/update/delete for any registered entity."""

    def __init__(
        self,
        engine: Engine,
        registry: EntityMetadataRegistry,
        resolver: PermissionResolver,
        builder: QueryBuilder,
        audit: AuditSink | None = None,
    ):
        self._engine = engine
        self._registry = registry
        self._resolver = resolver
        self._builder = builder
        self._audit = audit or LoggingAuditSink()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, entity_name: str, params: QueryParams, identity: Identity) -> dict[str, Any]:
        """Return ``{data, pagination}`` for one page of visible rows."""
        metadata = self._registry.get(entity_name)
        decision = self._authorize(identity, entity_name, "read")
        join_constraints, related_constraints = self._include_constraints(
            metadata, params.include, identity
        )
        query = self._builder.build(
            metadata,
            params,
            decision.row_constraint,
            elevated=self._resolver.is_elevated(identity.role, entity_name),
            include_constraints=join_constraints,
        )

        with database_errors(), self._engine.connect() as conn:
            total = conn.execute(query.count_statement(), query.count_params).scalar_one()
            rows = conn.execute(query.statement(), query.params).mappings().all()
            data = self._builder.project(metadata, rows, query.joins)
            self._attach_has_many(conn, metadata, data, query.has_many, related_constraints)

        total_pages = (total + query.limit - 1) // query.limit if total else 0
        return {
            "data": data,
            "pagination": {
                "page": query.page,
                "limit": query.limit,
                "total": total,
                "totalPages": total_pages,
                "hasMore": query.offset + len(data) < total,
            },
        }

    def get(
        self,
        entity_name: str,
        key: Any,
        identity: Identity,
        include: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Return one visible row.

        Raises:
            NotFoundError: If the row is absent or hidden by row-level security
        """
        metadata = self._registry.get(entity_name)
        decision = self._authorize(identity, entity_name, "read")
        join_constraints, related_constraints = self._include_constraints(
            metadata, include, identity
        )
        query = self._builder.build_lookup(
            metadata, key, decision.row_constraint, include, join_constraints
        )

        with database_errors(), self._engine.connect() as conn:
            row = conn.execute(query.statement(), query.params).mappings().first()
            if row is None:
                raise self._not_found(metadata)
            data = self._builder.project(metadata, [row], query.joins)
            self._attach_has_many(conn, metadata, data, query.has_many, related_constraints)
        return data[0]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self, entity_name: str, data: Mapping[str, Any], identity: Identity
    ) -> dict[str, Any]:
        """Insert a row and return it as the caller would read it."""
        metadata = self._registry.get(entity_name)
        decision = self._authorize(identity, entity_name, "create")
        values = self._writable_values(metadata, data)
        self._apply_owner(metadata, values, decision.row_constraint, stamp=True)

        missing = [
            f for f in metadata.required_fields if values.get(f) is None or values.get(f) == ""
        ]
        if missing:
            raise ValidationError(
                f"Missing required field(s): {', '.join(missing)}",
                details={"fields": missing},
            )

        insert_query = self._builder.build_insert(metadata, values)
        with database_errors(), self._engine.begin() as conn:
            new_key = conn.execute(insert_query.statement(), insert_query.params).scalar_one()
            after = self._load(conn, metadata, new_key, None)

        logger.info("Created %s %s by user %s", entity_name, new_key, identity.user_id)
        self._emit(entity_name, "create", identity, None, after)
        return after

    def update(
        self,
        entity_name: str,
        key: Any,
        data: Mapping[str, Any],
        identity: Identity,
    ) -> dict[str, Any]:
        """Apply a partial update to a visible row and return the result."""
        metadata = self._registry.get(entity_name)
        decision = self._authorize(identity, entity_name, "update")
        values = self._writable_values(metadata, data)

        immutable = sorted(set(values) & metadata.immutable_fields)
        if immutable:
            raise ValidationError(
                f"Field(s) cannot be changed: {', '.join(immutable)}",
                details={"fields": immutable},
            )
        if not values:
            raise ValidationError("No fields to update")
        self._apply_owner(metadata, values, decision.row_constraint, stamp=False)
        if "updated_at" in metadata.fields:
            values["updated_at"] = utcnow()

        update_query = self._builder.build_update(
            metadata, key, values, decision.row_constraint
        )
        with database_errors(), self._engine.begin() as conn:
            before = self._load(conn, metadata, key, decision.row_constraint)
            result = conn.execute(update_query.statement(), update_query.params)
            if result.rowcount == 0:
                raise self._not_found(metadata)
            after = self._load(conn, metadata, key, decision.row_constraint)

        logger.info("Updated %s %s by user %s", entity_name, key, identity.user_id)
        self._emit(entity_name, "update", identity, before, after)
        return after

    def delete(self, entity_name: str, key: Any, identity: Identity) -> None:
        """Delete a visible row.

        Raises:
            ConflictError: If other records still reference the row
        """
        metadata = self._registry.get(entity_name)
        decision = self._authorize(identity, entity_name, "delete")
        delete_query = self._builder.build_delete(metadata, key, decision.row_constraint)

        try:
            with database_errors(), self._engine.begin() as conn:
                before = self._load(conn, metadata, key, decision.row_constraint)
                result = conn.execute(delete_query.statement(), delete_query.params)
                if result.rowcount == 0:
                    raise self._not_found(metadata)
        except ForeignKeyViolation as e:
            raise ConflictError(f"{metadata.display_name} is still referenced") from e

        logger.info("Deleted %s %s by user %s", entity_name, key, identity.user_id)
        self._emit(entity_name, "delete", identity, before, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _authorize(self, identity: Identity, entity_name: str, operation: str) -> AccessDecision:
        decision = self._resolver.resolve(identity.role, entity_name, operation, identity)
        if not decision.allowed:
            raise AuthorizationError()
        return decision

    def _include_constraints(
        self,
        metadata: EntityMetadata,
        include: Sequence[str],
        identity: Identity,
    ) -> tuple[dict[str, RowConstraint], dict[str, RowConstraint]]:
        """Read access for every included relationship, checked like a direct read."""
        joins: dict[str, RowConstraint] = {}
        related: dict[str, RowConstraint] = {}
        for name in include:
            rel = metadata.relationships.get(name)
            if rel is None:
                continue  # rejected by the builder
            target = self._registry.for_table(rel.table)
            if target is None:
                continue
            decision = self._authorize(identity, target.name, "read")
            if decision.row_constraint is not None:
                (joins if rel.type == "belongs_to" else related)[name] = decision.row_constraint
        return joins, related

    def _attach_has_many(
        self,
        conn: Connection,
        metadata: EntityMetadata,
        records: list[dict[str, Any]],
        relationships: Sequence[Relationship],
        constraints: Mapping[str, RowConstraint],
    ) -> None:
        if not records or not relationships:
            return
        parent_ids = [r[metadata.primary_key] for r in records]
        for rel in relationships:
            query = self._builder.build_related(rel, parent_ids, constraints.get(rel.name))
            grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
            for row in conn.execute(query.statement(), query.params).mappings():
                child = dict(row)
                parent = child.pop(PARENT_KEY)
                grouped[parent].append(self._builder.strip_excluded_related(rel, child))
            for record in records:
                record[rel.name] = grouped.get(record[metadata.primary_key], [])

    def _load(
        self,
        conn: Connection,
        metadata: EntityMetadata,
        key: Any,
        constraint: RowConstraint | None,
    ) -> dict[str, Any]:
        query = self._builder.build_lookup(metadata, key, constraint)
        row = conn.execute(query.statement(), query.params).mappings().first()
        if row is None:
            raise self._not_found(metadata)
        return self._builder.project(metadata, [row])[0]

    @staticmethod
    def _writable_values(metadata: EntityMetadata, data: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be an object")
        unknown = sorted(str(k) for k in data if k not in metadata.fields)
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {metadata.name}: {', '.join(unknown)}",
                details={"fields": unknown},
            )
        writable = metadata.writable_fields
        return {k: v for k, v in data.items() if k in writable}

    @staticmethod
    def _apply_owner(
        metadata: EntityMetadata,
        values: dict[str, Any],
        constraint: RowConstraint | None,
        stamp: bool,
    ) -> None:
        """Keep writes inside the caller's own rows."""
        if constraint is None:
            return
        if constraint.field in values:
            supplied = coerce_value(
                constraint.field, metadata.field_type(constraint.field), values[constraint.field]
            )
            if supplied != constraint.value:
                raise AuthorizationError()
        elif stamp and constraint.field in metadata.writable_fields:
            values[constraint.field] = constraint.value
        elif stamp:
            # Ownership through the primary key cannot be created by the owner
            raise AuthorizationError()

    def _emit(
        self,
        entity_name: str,
        action: str,
        identity: Identity,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self._audit.record(
            AuditEvent(
                resource=entity_name,
                action=action,
                actor_id=identity.user_id,
                before=before,
                after=after,
            )
        )

    @staticmethod
    def _not_found(metadata: EntityMetadata) -> NotFoundError:
        return NotFoundError(f"{metadata.display_name} not found")
