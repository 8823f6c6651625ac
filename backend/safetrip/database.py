import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from safetrip import config

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


# Get connection URL from config
connection_url = config.get_settings().DATABASE_URL

# Render/Heroku style URLs use the legacy scheme
if connection_url.startswith("postgres://"):
    connection_url = connection_url.replace("postgres://", "postgresql+psycopg2://", 1)

# Convert postgresql+psycopg:// to postgresql+psycopg2:// for compatibility
if "postgresql+psycopg:" in connection_url and "postgresql+psycopg2:" not in connection_url:
    connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

if connection_url.startswith("sqlite"):
    # In-memory SQLite must share one connection or every session sees an empty database
    if connection_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            connection_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(connection_url, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        connection_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=3,
        max_overflow=7,
        pool_recycle=300,  # Recycle connections after 5 minutes
        echo=False  # Set to True for SQL debugging
    )

# expire_on_commit=False so loaded trips and users stay readable after their session closes
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

log.info(f"[Database] SQLAlchemy engine created for {engine.url.get_backend_name()}")


def create_all() -> None:
    """Create all tables (development and tests; production uses Alembic)."""
    from safetrip import models  # noqa: F401

    Base.metadata.create_all(engine)


def drop_all() -> None:
    from safetrip import models  # noqa: F401

    Base.metadata.drop_all(engine)
