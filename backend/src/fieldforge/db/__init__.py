"""Database layer - schema, engine and user lookups."""

from fieldforge.db.config import DatabaseConfig
from fieldforge.db.engine import create_db_engine, database_errors, init_database, seed_roles
from fieldforge.db.users import UserDirectory, UserRecord

__all__ = [
    "DatabaseConfig",
    "create_db_engine",
    "database_errors",
    "init_database",
    "seed_roles",
    "UserDirectory",
    "UserRecord",
]
