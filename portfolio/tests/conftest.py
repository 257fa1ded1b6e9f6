from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from portfolio.config import Settings
from portfolio.context import AppContext
from portfolio.db import ConnectionStatus, Database
from portfolio.models import Base
from portfolio.store import SqlStore


@pytest.fixture()
def database():
    """In-memory SQLite database.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    db = Database(engine, backend="local", status=ConnectionStatus.LOCAL)
    yield db
    db.dispose()


@pytest.fixture()
def store(database) -> SqlStore:
    return SqlStore(database)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        project_root=tmp_path, data_dir=tmp_path / "data",
        jira_domain="acme.atlassian.net", jira_email="me@acme.com", jira_token="tok",
        jira_proxy_url="", relay_url="http://relay.test",
    )


@pytest.fixture()
def app_ctx(settings, database, store) -> AppContext:
    return AppContext(settings, database, store)
