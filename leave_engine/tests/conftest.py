"""
Pytest configuration and fixtures
"""
import os

# Settings are read at import time
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-leave-engine-tests")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leave_engine.core.deps import get_db
from leave_engine.core.security import create_access_token
from leave_engine.db.base import Base
from leave_engine.main import app
from leave_engine.models import AuditLog, LeavePolicy, LeaveRequest, LeaveTransaction  # noqa: F401
from leave_engine.services.ledger_service import balance_cache
from leave_engine.services.notification_service import clear_notifiers
from leave_engine.services.policy_service import upsert_policy


# Use in-memory SQLite for testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Enable foreign keys for SQLite
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ANNUAL_LEAVE = "Annual Leave"
SICK_LEAVE = "Sick Leave"


@pytest.fixture(autouse=True)
def _reset_engine_state():
    """Fold cache and notifiers are process-wide; every test starts clean."""
    balance_cache.clear()
    clear_notifiers()
    yield
    balance_cache.clear()
    clear_notifiers()


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Test client fixture with database override"""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _make_policy(db, leave_type=ANNUAL_LEAVE, **overrides):
    """Create a policy with permissive windows unless overridden"""
    values = {
        "default_allocation": 15,
        "max_consecutive_days": 30,
        "min_advance_notice_days": 0,
        "max_advance_booking_days": 365,
        "allow_carry_forward": False,
        "carry_forward_limit": 0,
        "approval_thresholds": {"manager": 5, "department_head": 10, "admin": 30},
    }
    values.update(overrides)
    return upsert_policy(db, leave_type, actor_id=1, **values)


@pytest.fixture
def annual_policy(db):
    return _make_policy(db, ANNUAL_LEAVE)


@pytest.fixture
def sick_policy(db):
    return _make_policy(db, SICK_LEAVE, default_allocation=10, documents_required=True)


def auth_headers(employee_id, role="staff", department_id=None):
    """Bearer header for a token issued the way the identity provider does"""
    claims = {"sub": str(employee_id), "role": role}
    if department_id is not None:
        claims["department_id"] = department_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def policy_factory(db):
    """make(leave_type, **overrides) -> LeavePolicy"""
    def make(leave_type=ANNUAL_LEAVE, **overrides):
        return _make_policy(db, leave_type, **overrides)
    return make


@pytest.fixture
def headers_for():
    return auth_headers
