"""Engine construction, schema bootstrap and datastore error translation."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import StaticPool

from fieldforge.core.errors import ConflictError, ForeignKeyViolation, InfrastructureError
from fieldforge.db.config import DatabaseConfig
from fieldforge.db.schema import metadata, roles

logger = logging.getLogger(__name__)

# (name, priority, description)
DEFAULT_ROLES: tuple[tuple[str, int, str], ...] = (
    ("customer", 1, "Customer portal access to own records"),
    ("technician", 2, "Field technician working assigned jobs"),
    ("dispatcher", 3, "Schedules and assigns work"),
    ("manager", 4, "Manages staff, billing and reporting"),
    ("admin", 5, "Full system administration"),
)


def create_db_engine(config: DatabaseConfig) -> Engine:
    """Create an engine with bounded waits on every datastore call.

    SQLite gets foreign key enforcement and a busy timeout; PostgreSQL gets a
    connect timeout and a per-statement timeout.
    """
    timeout = config.timeout
    if config.is_sqlite:
        sqlite_path = config.sqlite_path
        if sqlite_path:
            Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)
            pool_args = {"pool_timeout": timeout}
        else:
            # One shared connection, otherwise every checkout sees a fresh empty database
            pool_args = {"poolclass": StaticPool}
        engine = create_engine(
            config.sqlalchemy_url,
            connect_args={"timeout": timeout, "check_same_thread": False},
            **pool_args,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        config.sqlalchemy_url,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args={
            "connect_timeout": int(timeout),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        },
    )


def init_database(engine: Engine, seed: bool = True) -> None:
    """Create missing tables and, optionally, the default role hierarchy."""
    with database_errors():
        metadata.create_all(engine)
        if seed:
            seed_roles(engine)


def seed_roles(engine: Engine) -> int:
    """Insert any default role that is not present yet. Returns rows inserted."""
    with engine.begin() as conn:
        existing = set(conn.execute(select(roles.c.name)).scalars())
        missing = [
            {"name": name, "priority": priority, "description": description}
            for name, priority, description in DEFAULT_ROLES
            if name not in existing
        ]
        if missing:
            conn.execute(insert(roles), missing)
    if missing:
        logger.info("Seeded %d role(s)", len(missing))
    return len(missing)


def _is_foreign_key_error(exc: IntegrityError) -> bool:
    sqlstate = getattr(exc.orig, "sqlstate", None)
    if sqlstate is not None:
        return sqlstate == "23503"
    return "FOREIGN KEY" in str(exc.orig).upper()


@contextmanager
def database_errors() -> Iterator[None]:
    """Translate driver errors into the FieldForge error taxonomy."""
    try:
        yield
    except IntegrityError as e:
        if _is_foreign_key_error(e):
            raise ForeignKeyViolation("Referenced record does not exist") from e
        raise ConflictError("Record conflicts with an existing record") from e
    except (OperationalError, PoolTimeoutError) as e:
        logger.error("Datastore unavailable: %s", e)
        raise InfrastructureError("Datastore unavailable, retry later") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            logger.error("Datastore connection lost: %s", e)
            raise InfrastructureError("Datastore unavailable, retry later") from e
        raise
