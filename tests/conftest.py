"""Pytest configuration and fixtures."""
import os
import uuid
from datetime import timedelta

# Keep module-level engines off PostgreSQL while the package is imported under test
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from trustgate.config import settings
from trustgate.core.clock import utcnow
from trustgate.db.base_class import Base
from trustgate.services.audit_trail import AuditTrail
from trustgate.services.decision_facade import TrustDecisionFacade
from trustgate.services.flag_cache import FlagCache
import trustgate.models  # noqa: F401


def _sqlite_engine(url: str):
    """File-backed SQLite whose transactions start with BEGIN IMMEDIATE so threaded writers serialize."""
    engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


# --- Per-test fixtures ---

@pytest.fixture
def test_engine(tmp_path):
    engine = _sqlite_engine(f"sqlite:///{tmp_path / 'trustgate.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def cache():
    return FlagCache(local_ttl=60, local_maxsize=256)


@pytest.fixture
def facade(session_factory, cache):
    return TrustDecisionFacade(session_factory, cache=cache)


@pytest.fixture
def broken_session_factory(tmp_path):
    """Sessions whose connections can never be opened (store unavailable)."""
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def no_retry_queue(monkeypatch):
    """Security-event retries never reach a broker in tests."""
    from trustgate.tasks import audit_tasks

    calls = []
    monkeypatch.setattr(audit_tasks.persist_hijack_attempt, "delay", lambda payload: calls.append(payload))
    return calls


@pytest.fixture
async def client(facade):
    """Async HTTP client with the facade dependency pointed at the test database."""
    from trustgate.api import deps
    from trustgate.main import app as fastapi_app

    fastapi_app.dependency_overrides[deps.get_facade] = lambda: facade

    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Service-Token": settings.SERVICE_TOKEN}


# --- Helpers ---

CHROME_UA = "Mozilla/5.0 (Macintosh) Chrome/126.0"


def new_org() -> uuid.UUID:
    return uuid.uuid4()


def make_flag(facade: TrustDecisionFacade, key: str = "new_dashboard", enabled: bool = False):
    return facade.create_flag(key, key.replace("_", " ").title(), enabled=enabled)


def issue_session(facade: TrustDecisionFacade, org, user_id=None, *, hours: int = 1, session_id=None):
    """Issue an unbound session and return (session_id, user_id)."""
    session_id = session_id or f"sess_{uuid.uuid4().hex}"
    user_id = user_id or uuid.uuid4()
    facade.issue_session(session_id, org, user_id, utcnow() + timedelta(hours=hours))
    return session_id, user_id
