"""Alembic migration runner.

Drives Alembic's programmatic API against the repository's ``migrations/``
directory without a static alembic.ini file.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from fieldforge.db.config import DatabaseConfig


@dataclass
class MigrationInfo:
    """One revision and whether the database has it."""

    revision: str
    description: str
    is_applied: bool


def default_migrations_dir(base_path: Path | None = None) -> Path:
    """Locate ``migrations/`` at the repository root (cwd or its parent)."""
    cwd = base_path or Path.cwd()
    if cwd.name == "backend":
        cwd = cwd.parent
    return cwd / "migrations"


def make_alembic_config(config: DatabaseConfig, migrations_dir: Path) -> Config:
    if not (migrations_dir / "env.py").exists():
        raise FileNotFoundError(f"No Alembic environment at {migrations_dir}")
    cfg = Config()
    cfg.set_main_option("script_location", str(migrations_dir))
    # ConfigParser interpolation would choke on "%" in URL-encoded passwords
    cfg.set_main_option("sqlalchemy.url", config.sqlalchemy_url.replace("%", "%%"))
    return cfg


def apply_migrations(
    config: DatabaseConfig,
    migrations_dir: Path,
    target: str | None = None,
) -> None:
    """Apply pending migrations up to ``target`` (default: head)."""
    command.upgrade(make_alembic_config(config, migrations_dir), target or "head")


def get_migration_status(config: DatabaseConfig, migrations_dir: Path) -> list[MigrationInfo]:
    """Every revision in chronological order with its applied flag."""
    script = ScriptDirectory.from_config(make_alembic_config(config, migrations_dir))

    engine = create_engine(config.sqlalchemy_url, poolclass=NullPool)
    try:
        with engine.connect() as conn:
            current_heads = set(MigrationContext.configure(conn).get_current_heads())
    finally:
        engine.dispose()

    applied: set[str] = set()
    for head in current_heads:
        for rev in script.iterate_revisions(head, "base"):
            applied.add(rev.revision)

    migrations = [
        MigrationInfo(
            revision=rev.revision,
            description=rev.doc or "",
            is_applied=rev.revision in applied,
        )
        for rev in script.walk_revisions()
    ]
    migrations.reverse()
    return migrations
