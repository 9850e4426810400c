from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import socialflow.api.main as api_main
from socialflow.permissions import role_defaults
from socialflow.core.config import get_settings
from socialflow.core.metrics import reset_metrics_for_tests
from socialflow.core.rate_limit import get_ip_rate_limiter
from socialflow.notifications.email_client import get_resend_client
from socialflow.operations.bootstrap import seed_authorization
from socialflow.permissions.role_defaults import invalidate_role_defaults_cache, load_role_defaults
from socialflow.storage import security
from socialflow.storage.db import Base, get_session, load_models
from tests.factories import FakeEmailClient, FakeRedis, TeamContext, build_team


ROOT = Path(__file__).resolve().parents[1]


def _build_sqlite_session_factory():
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _clear_runtime_caches() -> None:
    get_settings.cache_clear()
    load_role_defaults.cache_clear()
    get_resend_client.cache_clear()
    get_ip_rate_limiter.cache_clear()
    invalidate_role_defaults_cache()
    reset_metrics_for_tests()


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch, fake_redis):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SECRET_KEY", "socialflow-test-secret-key-0123456789abcdef")
    monkeypatch.setenv("ROLE_PERMISSIONS_FILE_PATH", str(ROOT / "config" / "role_permissions.yaml"))
    monkeypatch.setenv("APP_PUBLIC_BASE_URL", "https://app.socialflow.io")
    monkeypatch.setattr(security, "PBKDF2_ROUNDS", 1_000)
    monkeypatch.setattr(role_defaults, "get_client", lambda: fake_redis)
    _clear_runtime_caches()
    yield
    _clear_runtime_caches()


@pytest.fixture
def session_factory():
    factory = _build_sqlite_session_factory()
    session = factory()
    try:
        seed_authorization(session)
    finally:
        session.close()
    return factory


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def team(session) -> TeamContext:
    return build_team(session)


@pytest.fixture
def client(session_factory):
    def override_get_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    api_main.app.dependency_overrides[get_session] = override_get_session
    try:
        yield TestClient(api_main.app)
    finally:
        api_main.app.dependency_overrides.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_email() -> FakeEmailClient:
    return FakeEmailClient()
