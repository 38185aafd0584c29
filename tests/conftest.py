import os

# Cheap Argon2 parameters and no background scheduler while testing.
# Must be set before labben.config builds its Settings instance.
os.environ.setdefault("TOKEN_HASH_TIME_COST", "1")
os.environ.setdefault("TOKEN_HASH_MEMORY_COST", "1024")
os.environ.setdefault("TOKEN_HASH_PARALLELISM", "1")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import labben.main as main_module  # noqa: E402
from labben.config import settings  # noqa: E402
from labben.database import Base, get_db  # noqa: E402
from labben.dependencies import get_audit_logger, get_storage  # noqa: E402
from labben.main import app  # noqa: E402
from labben.middleware.rate_limit import limiter  # noqa: E402
from labben.services.audit_service import AuditLogger  # noqa: E402
from tests.test_utils import ADMIN_EMAIL, TEST_JWT_SECRET, FakeStorage, make_session_jwt  # noqa: E402


@pytest.fixture
def db_engine():
    """Fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def audit_logger(session_factory):
    return AuditLogger(session_factory)


@pytest.fixture
def client(db_session, storage, audit_logger):
    """Test client on the test database, fake storage, and disabled rate limiting."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_audit_logger] = lambda: audit_logger

    limiter.enabled = False

    # check_database_tables() must look at the test database
    original_engine = main_module.engine
    main_module.engine = db_session.get_bind()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    limiter.enabled = True
    main_module.engine = original_engine


@pytest.fixture
def auth_headers(monkeypatch):
    """Authorization header for the allow-listed dashboard user."""
    monkeypatch.setattr(settings, "supabase_jwt_secret", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "allowed_email", ADMIN_EMAIL)
    return {"Authorization": f"Bearer {make_session_jwt()}"}
