"""Generic CRUD endpoints for every registered entity."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel

from fieldforge.auth.dependencies import require_authenticated, require_permission
from fieldforge.auth.types import Identity
from fieldforge.core.errors import ValidationError
from fieldforge.query.builder import QueryParams
from fieldforge.services.entity_service import GenericEntityService


class WriteRequest(BaseModel):
    """Request body for create and update operations."""

    data: dict[str, Any]


def parse_filters(raw: str | None) -> dict[str, Any]:
    """Decode the ``filters`` query parameter (a JSON object string)."""
    if raw is None or raw.strip() == "":
        return {}
    try:
        filters = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("filters must be a JSON object")
    if not isinstance(filters, dict):
        raise ValidationError("filters must be a JSON object")
    return filters


def parse_include(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(name.strip() for name in raw.split(",") if name.strip())


def create_entities_router(service: GenericEntityService) -> APIRouter:
    """Create the entity router.

    Args:
        service: Entity service shared by all requests

    Returns:
        Configured APIRouter
    """
    router = APIRouter(prefix="/api/entities", tags=["entities"])

    @router.get("/{entity}", dependencies=[Depends(require_permission("read"))])
    def list_entity(
        entity: str,
        search: str | None = None,
        filters: str | None = None,
        sort: str | None = None,
        order: str | None = None,
        page: int | None = Query(None),
        limit: int | None = Query(None),
        include: str | None = None,
        identity: Identity = Depends(require_authenticated),
    ) -> dict[str, Any]:
        """List records with search, filter, sort, pagination and includes."""
        params = QueryParams(
            search=search,
            filters=parse_filters(filters),
            sort=sort,
            order=order,
            page=page,
            limit=limit,
            include=parse_include(include),
        )
        return service.list(entity, params, identity)

    @router.get("/{entity}/{id}", dependencies=[Depends(require_permission("read"))])
    def get_entity(
        entity: str,
        id: str,
        include: str | None = None,
        identity: Identity = Depends(require_authenticated),
    ) -> dict[str, Any]:
        """Get a single record."""
        return {"data": service.get(entity, id, identity, parse_include(include))}

    @router.post(
        "/{entity}",
        status_code=201,
        dependencies=[Depends(require_permission("create"))],
    )
    def create_entity(
        entity: str,
        body: WriteRequest,
        identity: Identity = Depends(require_authenticated),
    ) -> dict[str, Any]:
        return {"data": service.create(entity, body.data, identity)}

    @router.patch("/{entity}/{id}", dependencies=[Depends(require_permission("update"))])
    def update_entity(
        entity: str,
        id: str,
        body: WriteRequest,
        identity: Identity = Depends(require_authenticated),
    ) -> dict[str, Any]:
        """Apply a partial update."""
        return {"data": service.update(entity, id, body.data, identity)}

    @router.delete(
        "/{entity}/{id}",
        status_code=204,
        dependencies=[Depends(require_permission("delete"))],
    )
    def delete_entity(
        entity: str,
        id: str,
        identity: Identity = Depends(require_authenticated),
    ) -> Response:
        service.delete(entity, id, identity)
        return Response(status_code=204)

    return router
