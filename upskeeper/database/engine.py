"""
Database engine configuration for the telemetry store (SQLite).
"""
import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ..errors import IOFailureError
from ..nut.mapping import TELEMETRY_COLUMNS
from .models import Base, UPSTelemetry

logger = logging.getLogger(__name__)

DB_FILENAME = "ups_telemetry.db"
BUSY_TIMEOUT_SECONDS = 30.0


def default_db_path(data_dir: str) -> str:
    return os.path.join(data_dir, "data", DB_FILENAME)


def init_db(db_path: str) -> tuple[Engine, sessionmaker]:
    """Create the engine and session factory for ``db_path``."""
    logger.info("Initializing telemetry database at %s", db_path)
    directory = os.path.dirname(os.path.abspath(db_path))
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        raise IOFailureError(f"Cannot create database directory {directory}: {e}") from e

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute(f"PRAGMA busy_timeout = {int(BUSY_TIMEOUT_SECONDS * 1000)}")
        cursor.close()

    session_factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    logger.info("Database engine initialized")
    return engine, session_factory


def ensure_schema(engine: Engine) -> None:
    """Create the telemetry table if needed and add any missing columns.

    Safe to run repeatedly.
    """
    try:
        Base.metadata.create_all(engine)
        logger.info("Database schema ensured (create_all executed)")
        _run_inline_migrations(engine)
    except Exception as e:
        raise IOFailureError(f"Failed to ensure telemetry schema: {e}") from e


def _run_inline_migrations(engine: Engine) -> None:
    """Add telemetry columns missing from databases created by older releases."""
    table = UPSTelemetry.__tablename__
    with engine.begin() as conn:
        info = conn.exec_driver_sql(f"PRAGMA table_info('{table}')").fetchall()
        existing = {row[1] for row in info}
        for column in TELEMETRY_COLUMNS:
            if column not in existing:
                conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} FLOAT")
                logger.info("Applied inline migration: added %s.%s", table, column)
