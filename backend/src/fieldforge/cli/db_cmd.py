"""Database CLI commands: init, upgrade, status."""

from pathlib import Path

import click

from fieldforge.core.errors import InfrastructureError
from fieldforge.db.config import DatabaseConfig
from fieldforge.db.engine import create_db_engine, init_database, seed_roles
from fieldforge.db.migrations import apply_migrations, default_migrations_dir, get_migration_status


def database_config(database_url: str | None) -> DatabaseConfig:
    """Explicit ``--database-url`` first, then the environment."""
    if database_url:
        return DatabaseConfig(url=database_url)
    return DatabaseConfig.from_env()


database_url_option = click.option(
    "--database-url",
    default=None,
    help="Database URL (defaults to DATABASE_URL / FIELDFORGE_DB_PATH).",
)

migrations_option = click.option(
    "--migrations",
    "migrations_dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Alembic migrations directory (defaults to ./migrations).",
)


@click.group()
def db():
    """Database commands."""
    pass


@db.command()
@database_url_option
@click.option("--no-seed", is_flag=True, default=False, help="Skip seeding the default roles.")
def init(database_url: str | None, no_seed: bool):
    """Create missing tables directly from the schema and seed roles.

    Intended for SQLite development databases; use ``db upgrade`` for
    PostgreSQL deployments.
    """
    config = database_config(database_url)
    engine = create_db_engine(config)
    try:
        init_database(engine, seed=False)
        seeded = 0 if no_seed else seed_roles(engine)
    except InfrastructureError as e:
        click.echo(click.style(f"Error: {e.message}", fg="red"), err=True)
        raise SystemExit(1)
    finally:
        engine.dispose()

    click.echo(f"Database ready ({'sqlite' if config.is_sqlite else 'postgresql'}).")
    click.echo(f"Seeded {seeded} role(s).")


@db.command()
@database_url_option
@migrations_option
@click.option("--target", default=None, help="Target revision (default: head).")
@click.option("--seed/--no-seed", default=True, help="Seed the default roles afterwards.")
def upgrade(database_url: str | None, migrations_dir: Path | None, target: str | None, seed: bool):
    """Apply pending Alembic migrations."""
    config = database_config(database_url)
    migrations_dir = migrations_dir or default_migrations_dir()

    try:
        apply_migrations(config, migrations_dir, target)
    except FileNotFoundError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        raise SystemExit(1)
    click.echo(click.style("Migrations applied.", fg="green"))

    if seed:
        engine = create_db_engine(config)
        try:
            seeded = seed_roles(engine)
        finally:
            engine.dispose()
        click.echo(f"Seeded {seeded} role(s).")


@db.command()
@database_url_option
@migrations_option
def status(database_url: str | None, migrations_dir: Path | None):
    """Show applied and pending migrations."""
    config = database_config(database_url)
    migrations_dir = migrations_dir or default_migrations_dir()

    try:
        migrations = get_migration_status(config, migrations_dir)
    except FileNotFoundError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        raise SystemExit(1)

    if not migrations:
        click.echo("No migrations found.")
        return

    for info in migrations:
        marker = click.style("applied", fg="green") if info.is_applied else click.style(
            "pending", fg="yellow"
        )
        click.echo(f"  {info.revision}  {marker}  {info.description}")
