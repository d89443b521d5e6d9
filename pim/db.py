import os
import logging
from typing import Generator

from sqlalchemy import create_engine, event
from sqlmodel import SQLModel, Session

log = logging.getLogger("pim.db")

# Read from env. Fallback to local SQLite only if env var is missing.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data.db")

# Railway often provides 'postgresql://'. SQLAlchemy needs the psycopg driver.
if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# SSL for Railway proxy hosts
connect_args = {"sslmode": "require"} if ".proxy.rlwy.net" in DATABASE_URL else {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}


def enable_sqlite_savepoints(engine) -> None:
    """Let pysqlite run SAVEPOINTs: per-record writes in the importer rely on them."""

    @event.listens_for(engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=connect_args,
)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)


def init_db() -> None:
    # Ensure models are imported so tables are registered
    from . import models  # noqa
    SQLModel.metadata.create_all(bind=engine)
    log.info("Tables ensured on %s", engine.url.render_as_string(hide_password=True))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
