"""Alembic environment for the cutover engine tables."""

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from cutover_engine.infrastructure.postgres.config import settings
from cutover_engine.infrastructure.postgres.database import Base
from cutover_engine.infrastructure.postgres import models  # noqa: F401  registers tables

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# CUTOVER_DATABASE_URL_OVERRIDE or the CUTOVER_POSTGRES_* parts
config.set_main_option("sqlalchemy.url", settings.database_url)

target_metadata = Base.metadata


def _context_options() -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        # SQLite cannot ALTER most things in place
        "render_as_batch": settings.is_sqlite,
    }


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_context_options(),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, **_context_options())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
