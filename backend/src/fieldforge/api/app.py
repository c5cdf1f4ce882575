"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine

from fieldforge.api.entities import create_entities_router
from fieldforge.auth.endpoints import create_admin_router, create_auth_router
from fieldforge.auth.hashing import TokenHasher
from fieldforge.auth.middleware import AuthMiddleware, AuthSettings
from fieldforge.auth.permissions import PermissionResolver
from fieldforge.auth.roles import RoleHierarchy
from fieldforge.auth.token_service import TokenService
from fieldforge.core.config import Settings
from fieldforge.core.errors import FieldForgeError
from fieldforge.core.logging_config import configure_logging
from fieldforge.db.engine import create_db_engine, database_errors, init_database
from fieldforge.db.users import UserDirectory
from fieldforge.metadata.registry import EntityMetadataRegistry
from fieldforge.query.builder import QueryBuilder
from fieldforge.services.audit import AuditSink
from fieldforge.services.entity_service import GenericEntityService
from fieldforge.services.sessions import SessionsService

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    registry: EntityMetadataRegistry | None = None,
    hierarchy: RoleHierarchy | None = None,
    audit_sink: AuditSink | None = None,
) -> FastAPI:
    """Build the API with every service wired from ``settings``.

    Args:
        settings: Runtime configuration (read from the environment when omitted)
        engine: Existing engine; one is created from ``settings.database`` otherwise
        registry: Entity metadata; loaded from ``settings.metadata_path`` otherwise
        hierarchy: Role hierarchy; read from the ``roles`` table otherwise
        audit_sink: Receives audit events; logs them when omitted

    Raises:
        ValueError: If the entity metadata fails validation
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    owns_engine = engine is None
    if engine is None:
        engine = create_db_engine(settings.database)
        if settings.database.is_sqlite:
            init_database(engine)
    if registry is None:
        registry = EntityMetadataRegistry.from_path(settings.metadata_path)
    if hierarchy is None:
        hierarchy = RoleHierarchy.from_database(engine)

    users = UserDirectory(engine)
    tokens = TokenService(
        engine,
        settings.secret_key,
        access_token_ttl=settings.access_token_ttl,
        refresh_token_ttl=settings.refresh_token_ttl,
        retention_days=settings.token_retention_days,
        hasher=TokenHasher(settings.hash_rounds),
        users=users,
    )
    permissions = PermissionResolver(registry, hierarchy)
    builder = QueryBuilder(registry, settings.default_page_size, settings.max_page_size)
    entities = GenericEntityService(engine, registry, permissions, builder, audit_sink)
    sessions = SessionsService(tokens, users, audit_sink)
    auth_settings = AuthSettings(local_auth_enabled=settings.dev_auth_enabled)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "FieldForge API starting with %d entities (%s)",
            len(registry),
            "sqlite" if settings.database.is_sqlite else "postgresql",
        )
        yield
        if owns_engine:
            engine.dispose()

    app = FastAPI(title="FieldForge API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.registry = registry
    app.state.permissions = permissions
    app.state.tokens = tokens
    app.state.entities = entities

    # Added first so CORS wraps the auth gate and preflights are answered
    app.add_middleware(AuthMiddleware, tokens=tokens, settings=auth_settings, users=users)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FieldForgeError)
    async def fieldforge_error_handler(request: Request, exc: FieldForgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "validation_error",
                    "message": "Invalid request",
                    "details": {"fields": fields},
                }
            },
        )

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        with database_errors(), engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ok", "entities": len(registry)}

    app.include_router(create_auth_router(tokens, users, auth_settings))
    app.include_router(create_admin_router(sessions))
    app.include_router(create_entities_router(entities))
    return app
