"""Pytest configuration and fixtures."""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["MFA_TEMP_TOKEN_SECRET"] = "test-mfa-temp-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["CAPTCHA_DELAY_SECONDS"] = "0"
os.environ["CLEANUP_ENABLED"] = "false"
os.environ["EMAIL_PROVIDER"] = "console"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from warden.database import Base, get_db
from warden.exceptions import EmailDeliveryError
from warden.models.audit_log import AuditLog
from warden.models.backup_code import BackupCode  # noqa: F401
from warden.models.enums import UserStatus
from warden.models.session import RefreshToken  # noqa: F401
from warden.models.user import User
from warden.services import email as email_module
from warden.services import login_throttle as throttle_module
from warden.services import mfa as mfa_module
from warden.services.password import PasswordHasher

TEST_PASSWORD = "Password123"


class FakeClock:
    """Settable replacement for datetime.utcnow."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingEmailSender:
    """Keeps every outgoing message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send_verification_email(self, email: str, name: str, link: str) -> None:
        self.sent.append({"kind": "verification", "email": email, "name": name, "link": link})

    def send_password_reset_email(self, email: str, name: str, link: str) -> None:
        self.sent.append({"kind": "password_reset", "email": email, "name": name, "link": link})

    def last_token(self, kind: str) -> str:
        message = [m for m in self.sent if m["kind"] == kind][-1]
        return message["link"].split("token=", 1)[1]


class FailingEmailSender:
    """Every send fails the way an unreachable provider would."""

    def send_verification_email(self, email: str, name: str, link: str) -> None:
        raise EmailDeliveryError("Brevo request failed: connection refused")

    def send_password_reset_email(self, email: str, name: str, link: str) -> None:
        raise EmailDeliveryError("Brevo request failed: connection refused")


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite database for tests."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(name="db_session")
def db_session_fixture(engine):
    testing_session_local = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(name="outbox", autouse=True)
def outbox_fixture(monkeypatch):
    """Fresh in-process state per test and a recording email sender."""
    sender = RecordingEmailSender()
    monkeypatch.setattr(email_module, "_email_sender", sender)
    monkeypatch.setattr(throttle_module, "_login_throttle", None)
    monkeypatch.setattr(mfa_module, "_mfa_attempt_tracker", None)
    monkeypatch.setattr(mfa_module, "_used_temp_tokens", None)
    return sender


@pytest.fixture(name="failing_email")
def failing_email_fixture(monkeypatch, outbox):
    sender = FailingEmailSender()
    monkeypatch.setattr(email_module, "_email_sender", sender)
    return sender


@pytest.fixture(name="failing_audit")
def failing_audit_fixture():
    """Make every audit row insert fail at flush time."""

    def _fail(mapper, connection, target):
        raise OperationalError("INSERT INTO audit_log", {}, Exception("disk I/O error"))

    event.listen(AuditLog, "before_insert", _fail)
    yield
    event.remove(AuditLog, "before_insert", _fail)


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="hasher")
def hasher_fixture():
    return PasswordHasher(rounds=4)


@pytest.fixture(name="client")
def client_fixture(db_session: Session):
    """Create a test client with overridden DB dependency and disabled rate limiting."""
    from main import app
    from warden.rate_limit import limiter

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    limiter.enabled = False
    with TestClient(app) as c:
        yield c
    limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture(name="make_user")
def make_user_fixture(db_session: Session, hasher: PasswordHasher):
    """Factory inserting a user directly, active unless told otherwise."""

    def _make(
        email: str = "test@example.com",
        password: str = TEST_PASSWORD,
        display_name: str = "Test User",
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        user = User(email=email, password_hash=hasher.hash(password), display_name=display_name, status=status)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture(name="test_user")
def test_user_fixture(make_user):
    """Create an active test user and return its credentials."""
    user = make_user()
    return {"user_id": user.id, "email": user.email, "password": TEST_PASSWORD}


@pytest.fixture(name="logged_in")
def logged_in_fixture(client: TestClient, test_user: dict):
    """Log the test user in and return the login response body."""
    response = client.post(
        "/api/v1/auth/login",
        json={"email": test_user["email"], "password": test_user["password"]},
    )
    assert response.status_code == 200
    return response.json()
