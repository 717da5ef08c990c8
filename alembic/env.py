"""
Alembic environment for the appointments schema.

Reads the same DatabaseConfig as the service. Migrations run on a sync
driver: asyncpg becomes psycopg2, aiosqlite becomes pysqlite.
"""

import os
import sys
from logging.config import fileConfig
from typing import Any

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.db.models import DbBaseModel  # noqa: E402
from common.api_error import ConfigurationError  # noqa: E402
from common.config import DbDriver, get_config, initialize_config  # noqa: E402

load_dotenv()
try:
    initialize_config()
except ConfigurationError as e:
    print(f"FATAL: Configuration error:\n{e}")
    sys.exit(1)

config = context.config
app_config = get_config()

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = DbBaseModel.metadata

_SYNC_DRIVERS = {
    DbDriver.ASYNCPG: "postgresql+psycopg2",
    DbDriver.PSYCOPG: "postgresql+psycopg",
    DbDriver.AIOSQLITE: "sqlite",
}


def get_sync_url() -> str:
    """Application URL with the async driver swapped for its sync twin."""
    db_config = app_config.database
    if db_config is None:
        raise RuntimeError("Database configuration not found in environment")

    url = make_url(db_config.get_connection_url(include_password=True))
    url = url.set(drivername=_SYNC_DRIVERS[db_config.driver])
    return url.render_as_string(hide_password=False)


def get_connect_args() -> dict[str, Any]:
    """libpq spelling of the application's SSL settings."""
    db_config = app_config.database
    if db_config is None or db_config.driver == DbDriver.AIOSQLITE:
        return {}
    if not db_config.ssl_mode:
        return {}

    connect_args: dict[str, Any] = {"sslmode": db_config.ssl_mode.value}
    if db_config.requires_ssl():
        for key, path in (
            ("sslrootcert", db_config.ssl_ca_path),
            ("sslcert", db_config.ssl_cert_path),
            ("sslkey", db_config.ssl_key_path),
        ):
            if path:
                connect_args[key] = str(path)
    return connect_args


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    context.configure(
        url=get_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_sync_url()

    # NullPool: one short-lived connection per migration run
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=get_connect_args(),
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
