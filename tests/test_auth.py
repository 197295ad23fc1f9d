"""Tests for login, CAPTCHA gating, refresh, logout and token endpoints."""

import re

import bcrypt
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from warden.models.audit_log import AuditLog
from warden.models.enums import AuditAction, UserStatus
from warden.models.session import RefreshToken
from warden.models.user import User


def solve(question: str) -> str:
    left, op, right = re.match(r"What is (\d+) ([+\-*]) (\d+)\?", question).groups()
    a, b = int(left), int(right)
    return str({"+": a + b, "-": a - b, "*": a * b}[op])


def login(client: TestClient, email: str, password: str, **extra):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password, **extra})


class TestLogin:
    """Tests for password login."""

    def test_login_success(self, client: TestClient, test_user: dict):
        response = login(client, test_user["email"], test_user["password"])
        assert response.status_code == 200
        data = response.json()
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["mfaRequired"] is False
        assert data["user"]["email"] == test_user["email"]
        assert data["user"]["status"] == "active"
        assert "tempToken" not in data

    def test_login_case_insensitive(self, client: TestClient, test_user: dict):
        """Login works regardless of email case."""
        response = login(client, "  TEST@EXAMPLE.COM ", test_user["password"])
        assert response.status_code == 200

    def test_wrong_password_and_unknown_email_look_alike(self, client: TestClient, test_user: dict):
        """Both failures return the same status and body."""
        wrong = login(client, test_user["email"], "WrongPassword1")
        unknown = login(client, "nobody@example.com", "WrongPassword1")
        assert wrong.status_code == 401
        assert unknown.status_code == 401
        for response in (wrong, unknown):
            assert response.json()["detail"] == "Invalid email or password"
            assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_non_active_user_rejected(self, client: TestClient, make_user):
        """Pending and suspended accounts fail exactly like a wrong password."""
        make_user(email="pending@example.com", status=UserStatus.PENDING)
        make_user(email="suspended@example.com", status=UserStatus.SUSPENDED)
        for email in ("pending@example.com", "suspended@example.com"):
            response = login(client, email, "Password123")
            assert response.status_code == 401
            assert response.json()["detail"] == "Invalid email or password"

    def test_failed_login_is_audited(self, client: TestClient, test_user: dict, db_session: Session):
        login(client, test_user["email"], "WrongPassword1")
        entry = db_session.query(AuditLog).filter_by(action=AuditAction.USER_LOGIN_FAILED).one()
        assert entry.user_id == test_user["user_id"]
        assert entry.details["reason"] == "invalid_password"

    def test_login_sets_last_login(self, client: TestClient, test_user: dict, db_session: Session):
        login(client, test_user["email"], test_user["password"])
        user = db_session.get(User, test_user["user_id"])
        db_session.refresh(user)
        assert user.last_login_at is not None

    def test_remember_me_extends_session(self, client: TestClient, test_user: dict, db_session: Session):
        login(client, test_user["email"], test_user["password"], remember_me=True)
        row = db_session.query(RefreshToken).one()
        assert row.remember_me
        assert (row.expires_at - row.created_at).days >= 29

    def test_audit_failure_does_not_fail_login(self, client: TestClient, test_user: dict, failing_audit):
        response = login(client, test_user["email"], test_user["password"])
        assert response.status_code == 200
        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": response.json()["refresh_token"]})
        assert refreshed.status_code == 200

    def test_rehash_on_cost_change(self, client: TestClient, make_user, db_session: Session):
        """A hash made at another cost factor is upgraded on successful login."""
        user = make_user()
        user.password_hash = bcrypt.hashpw(b"Password123", bcrypt.gensalt(rounds=5)).decode("utf-8")
        db_session.commit()
        assert login(client, user.email, "Password123").status_code == 200
        db_session.refresh(user)
        assert user.password_hash.startswith("$2b$04$")


class TestCaptchaGate:
    """Tests for the per-IP CAPTCHA gate on login."""

    def test_login_status_starts_clean(self, client: TestClient):
        response = client.get("/api/v1/auth/login-status")
        assert response.json() == {"requiresCaptcha": False, "delaySeconds": 0, "failedAttempts": 0}

    def test_captcha_endpoint(self, client: TestClient):
        response = client.get("/api/v1/auth/captcha")
        assert response.status_code == 200
        data = response.json()
        assert set(data) == {"captchaId", "question", "expiresAt"}
        assert data["question"].startswith("What is ")

    def test_gate_after_threshold(self, client: TestClient, test_user: dict):
        """The failure that reaches the threshold carries a fresh challenge."""
        first = login(client, test_user["email"], "WrongPassword1")
        assert first.status_code == 401
        assert "requiresCaptcha" not in first.json()

        second = login(client, test_user["email"], "WrongPassword1")
        assert second.status_code == 401
        body = second.json()
        assert body["requiresCaptcha"] is True
        assert body["failedAttempts"] == 2
        assert body["captcha"]["captchaId"]

        status = client.get("/api/v1/auth/login-status").json()
        assert status["requiresCaptcha"] is True
        assert status["failedAttempts"] == 2

    def test_gated_login_needs_captcha(self, client: TestClient, test_user: dict):
        for _ in range(2):
            login(client, test_user["email"], "WrongPassword1")

        response = login(client, test_user["email"], test_user["password"])
        assert response.status_code == 400
        assert response.json()["code"] == "CAPTCHA_REQUIRED"
        captcha = response.json()["captcha"]

        response = login(
            client,
            test_user["email"],
            test_user["password"],
            captcha_id=captcha["captchaId"],
            captcha_answer=str(int(solve(captcha["question"])) + 1),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CAPTCHA_INVALID"
        captcha = response.json()["captcha"]

        response = login(
            client,
            test_user["email"],
            test_user["password"],
            captcha_id=captcha["captchaId"],
            captcha_answer=solve(captcha["question"]),
        )
        assert response.status_code == 200
        assert client.get("/api/v1/auth/login-status").json()["failedAttempts"] == 0

    def test_captcha_cannot_be_replayed(self, client: TestClient, test_user: dict):
        for _ in range(2):
            login(client, test_user["email"], "WrongPassword1")
        captcha = client.get("/api/v1/auth/captcha").json()
        answer = solve(captcha["question"])

        first = login(client, test_user["email"], "WrongPassword1", captcha_id=captcha["captchaId"], captcha_answer=answer)
        assert first.status_code == 401
        replay = login(
            client, test_user["email"], test_user["password"], captcha_id=captcha["captchaId"], captcha_answer=answer
        )
        assert replay.status_code == 400
        assert replay.json()["code"] == "CAPTCHA_INVALID"


class TestRefresh:
    """Tests for refresh token rotation."""

    def test_refresh_rotates(self, client: TestClient, logged_in: dict):
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert response.status_code == 200
        data = response.json()
        assert data["access_token"]
        assert data["refresh_token"] != logged_in["refresh_token"]

        stale = client.post("/api/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert stale.status_code == 401

        fresh = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert fresh.status_code == 200

    def test_refresh_unknown_token(self, client: TestClient):
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired refresh token"

    def test_relogin_same_device_invalidates_previous_token(
        self, client: TestClient, test_user: dict, logged_in: dict, db_session: Session
    ):
        """A second login from the same device reuses the session and rotates its token."""
        again = login(client, test_user["email"], test_user["password"]).json()
        assert again["refresh_token"] != logged_in["refresh_token"]
        assert db_session.query(RefreshToken).count() == 1
        stale = client.post("/api/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert stale.status_code == 401

    def test_refresh_refused_for_suspended_user(
        self, client: TestClient, test_user: dict, logged_in: dict, db_session: Session
    ):
        user = db_session.get(User, test_user["user_id"])
        user.status = UserStatus.SUSPENDED
        db_session.commit()
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert response.status_code == 401


class TestLogout:
    """Tests for logout."""

    def test_logout_revokes_refresh_token(self, client: TestClient, logged_in: dict):
        headers = {"Authorization": f"Bearer {logged_in['access_token']}"}
        response = client.post("/api/v1/auth/logout", json={"refresh_token": logged_in["refresh_token"]}, headers=headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"

        response = client.post("/api/v1/auth/refresh", json={"refresh_token": logged_in["refresh_token"]})
        assert response.status_code == 401

    def test_logout_is_idempotent(self, client: TestClient, logged_in: dict):
        headers = {"Authorization": f"Bearer {logged_in['access_token']}"}
        for _ in range(2):
            response = client.post("/api/v1/auth/logout", json={"refresh_token": "unknown"}, headers=headers)
            assert response.status_code == 200

    def test_logout_requires_auth(self, client: TestClient, logged_in: dict):
        response = client.post("/api/v1/auth/logout", json={"refresh_token": logged_in["refresh_token"]})
        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"


class TestTokenVerification:
    """Tests for token verification and the profile endpoint."""

    def test_verify_valid_token(self, client: TestClient, test_user: dict, logged_in: dict):
        response = client.get(f"/api/v1/auth/verify?token={logged_in['access_token']}")
        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["user_id"] == str(test_user["user_id"])
        assert data["email"] == test_user["email"]

    def test_verify_invalid_token(self, client: TestClient):
        response = client.get("/api/v1/auth/verify?token=invalid.token.here")
        assert response.status_code == 401

    def test_refresh_token_is_not_an_access_token(self, client: TestClient, logged_in: dict):
        response = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {logged_in['refresh_token']}"})
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_me(self, client: TestClient, test_user: dict, logged_in: dict):
        response = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {logged_in['access_token']}"})
        assert response.status_code == 200
        assert response.json()["id"] == test_user["user_id"]

    def test_me_unauthenticated(self, client: TestClient):
        assert client.get("/api/v1/auth/me").status_code == 401


class TestApp:
    """Tests for app-level endpoints and middleware."""

    def test_health(self, client: TestClient):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "app": "warden", "version": "0.1.0"}

    def test_security_headers(self, client: TestClient):
        response = client.get("/api/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_oversized_body_rejected(self, client: TestClient):
        response = client.post(
            "/api/v1/auth/login",
            content=b" " * (65 * 1024),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 413
