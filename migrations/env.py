"""Alembic environment for FieldForge migrations.

Configured programmatically by ``fieldforge.db.migrations``; there is no
static alembic.ini.
"""

from alembic import context
from sqlalchemy import create_engine, pool

from fieldforge.db.schema import metadata


def run_migrations_offline():
    """Emit SQL for the migrations without a database connection."""
    url = context.config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    url = context.config.get_main_option("sqlalchemy.url")
    connectable = create_engine(url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
