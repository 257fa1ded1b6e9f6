from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, inspect as sa_inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from portfolio.config import Settings
from portfolio.models import Base

log = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    LOCAL = "local"
    ERROR = "error"
    INITIALIZING = "initializing"


# Columns added after the first release; older databases get them on open.
_ADDED_COLUMNS = {
    "initiatives": {
        "key_initiative": "VARCHAR(10) DEFAULT 'No'",
        "updated_at": "DATETIME",
    },
    "snapshots": {
        "automatic": "BOOLEAN DEFAULT 0",
    },
}


class Database:
    """An engine plus session factory for one backend (cloud or local)."""

    def __init__(self, engine: Engine, *, backend: str, status: ConnectionStatus):
        self.engine = engine
        self.backend = backend
        self.status = status
        self._factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def session(self) -> Session:
        return self._factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Context manager providing a transactional session scope.

        Usage::

            with database.session_scope() as session:
                ...
        """
        session = self.session()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """Ping the backend; a cloud backend that fails is marked ``error``."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            log.error("Health check failed for %s backend: %s", self.backend, exc)
            if self.backend == "cloud":
                self.status = ConnectionStatus.ERROR
            return False
        if self.backend == "cloud":
            self.status = ConnectionStatus.CONNECTED
        return True

    def dispose(self) -> None:
        self.engine.dispose()


def _prepare(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    _migrate_existing_db(engine)


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    for table, columns in _ADDED_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        present = {col["name"] for col in inspector.get_columns(table)}
        for name, ddl in columns.items():
            if name not in present:
                with engine.begin() as conn:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


def open_local_database(db_path: str | Path) -> Database:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    _prepare(engine)
    return Database(engine, backend="local", status=ConnectionStatus.LOCAL)


def open_cloud_database(url: str) -> Database:
    """Connect to the cloud database and verify it answers. Raises on failure."""
    engine = create_engine(url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        _prepare(engine)
    except Exception:
        engine.dispose()
        raise
    return Database(engine, backend="cloud", status=ConnectionStatus.CONNECTED)


def open_database(settings: Settings) -> Database:
    """Open the cloud database if configured and reachable, else the local SQLite file."""
    if not settings.database_url:
        log.warning("DATABASE_URL not configured, using local database at %s", settings.sqlite_path)
        return open_local_database(settings.sqlite_path)
    try:
        database = open_cloud_database(settings.database_url)
        log.info("Connected to cloud database")
        return database
    except SQLAlchemyError as exc:
        log.error("Cloud database connection failed, falling back to local storage: %s", exc)
        database = open_local_database(settings.sqlite_path)
        database.status = ConnectionStatus.ERROR
        return database
