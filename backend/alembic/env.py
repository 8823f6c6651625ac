import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

from safetrip import models  # noqa: F401
from safetrip.database import Base

# Load .env file
load_dotenv()

# Alembic Config object
config = context.config

# Check DATABASE_URL first (Render sets this), then POSTGRES_URI, then default to local SQLite
_db_url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI")
database_url: str = _db_url if _db_url else "sqlite:///./safetrip.db"

# Only apply PostgreSQL-specific transformations if using PostgreSQL
if database_url.startswith("postgresql") or database_url.startswith("postgres://"):
    # Force psycopg2 (synchronous) driver for Alembic migrations
    if "+asyncpg" in database_url:
        database_url = database_url.replace("+asyncpg", "+psycopg2")
    elif "postgresql+psycopg:" in database_url:
        database_url = database_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")
    elif database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+psycopg2://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    print(f"[Alembic] Using PostgreSQL: {database_url.split('://')[0]}")
else:
    print("[Alembic] Using SQLite database")

config.set_main_option("sqlalchemy.url", database_url)

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section)
    if not configuration:
        raise Exception("No config section for Alembic")
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


# Entry point
if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
