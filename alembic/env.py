"""Alembic environment for the HireGen store."""
from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Keep loggers the app already configured (structlog) enabled
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

from database import Base, _make_engine  # noqa: E402
import models  # noqa: E402,F401  # registers every table on Base.metadata

target_metadata = Base.metadata


def get_url() -> str:
    """DATABASE_URL wins over the ini file's sqlalchemy.url."""
    return os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=get_url().startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    url = get_url()
    connectable = _make_engine(url)

    try:
        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                render_as_batch=url.startswith("sqlite"),
            )

            with context.begin_transaction():
                context.run_migrations()
    finally:
        connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
