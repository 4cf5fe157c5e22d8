from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_JWT_SECRET"] = "test-jwt-secret"
os.environ["ALLOWED_HOSTS"] = "testserver,localhost"
os.environ["LOG_JSON"] = "false"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["ENV"] = "dev"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cobros.api.deps import get_notifier_dep, get_session_factory
from cobros.db.base import Base
from cobros.db.session import get_db
from cobros.main import app
import cobros.models  # noqa: F401

from tests.testkit import RecordingNotifier


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def file_session_factory(tmp_path):
    """File-backed database so worker threads get their own connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cobros.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def client(session_factory, notifier):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier_dep] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
