"""
Alembic environment configuration.

Runs migrations synchronously against ``settings.database_url``.
"""

import os
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

import labben.config as config_module
from alembic import context
from labben.database import Base

# Import all models to ensure they're registered
from labben.models import document, download_log, download_token  # noqa: F401

config = context.config

# Tests may target a scratch database without touching app settings by setting
#   ALEMBIC_DATABASE_URL=sqlite:///...
config.set_main_option(
    "sqlalchemy.url",
    (os.environ.get("ALEMBIC_DATABASE_URL") or config_module.settings.database_url).replace(
        "%", "%%"
    ),
)

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to the script output without a database connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Run migrations on a synchronous engine.

    SQLite cannot ALTER most constraints in place, so it gets batch mode.
    """
    connectable = create_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
