"""Tests for forgot-password and password reset."""

from datetime import datetime, timedelta

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from warden.models.audit_log import AuditLog
from warden.models.enums import AuditAction, TokenPurpose
from warden.models.session import RefreshToken
from warden.services.auth import FORGOT_PASSWORD_MESSAGE, RESET_PASSWORD_MESSAGE

FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0"
CHROME = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
NEW_PASSWORD = "NewPassword456"


def login(client: TestClient, email: str, password: str, user_agent: str = "testclient"):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers={"User-Agent": user_agent},
    )


def request_reset(client: TestClient, outbox, email: str) -> str:
    response = client.post("/api/v1/auth/forgot-password", json={"email": email})
    assert response.status_code == 200
    return outbox.last_token("password_reset")


class TestForgotPassword:
    """Tests for requesting a reset link."""

    def test_known_email_sends_link(self, client: TestClient, test_user: dict, outbox):
        response = client.post("/api/v1/auth/forgot-password", json={"email": test_user["email"]})
        assert response.status_code == 200
        assert response.json()["message"] == FORGOT_PASSWORD_MESSAGE
        assert len(outbox.sent) == 1
        assert outbox.sent[0]["link"].startswith("http://localhost:3000/reset-password?token=")

    def test_unknown_email_same_answer(self, client: TestClient, outbox):
        response = client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        assert response.status_code == 200
        assert response.json()["message"] == FORGOT_PASSWORD_MESSAGE
        assert outbox.sent == []

    def test_email_failure_same_answer(self, client: TestClient, test_user: dict, db_session: Session, failing_email):
        response = client.post("/api/v1/auth/forgot-password", json={"email": test_user["email"]})
        assert response.status_code == 200
        assert response.json()["message"] == FORGOT_PASSWORD_MESSAGE
        # The link was still issued and stays redeemable once mail recovers
        assert db_session.query(RefreshToken).filter_by(purpose=TokenPurpose.PASSWORD_RESET).count() == 1

    def test_reset_artifact_is_not_a_session(self, client: TestClient, test_user: dict, logged_in: dict, outbox):
        request_reset(client, outbox, test_user["email"])
        response = client.get("/api/v1/auth/sessions", headers={"Authorization": f"Bearer {logged_in['access_token']}"})
        assert len(response.json()["sessions"]) == 1


class TestResetPassword:
    """Tests for completing a reset."""

    def test_reset_changes_password(self, client: TestClient, test_user: dict, outbox):
        token = request_reset(client, outbox, test_user["email"])
        response = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert response.status_code == 200
        assert response.json()["message"] == RESET_PASSWORD_MESSAGE

        assert login(client, test_user["email"], test_user["password"]).status_code == 401
        assert login(client, test_user["email"], NEW_PASSWORD).status_code == 200

    def test_reset_revokes_every_session(self, client: TestClient, test_user: dict, outbox, db_session: Session):
        """Every refresh token issued before the reset stops working."""
        tokens = [
            login(client, test_user["email"], test_user["password"], user_agent=agent).json()["refresh_token"]
            for agent in (FIREFOX, CHROME)
        ]
        token = request_reset(client, outbox, test_user["email"])
        client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})

        for refresh_token in tokens:
            response = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
            assert response.status_code == 401

        db_session.expire_all()
        live = db_session.query(RefreshToken).filter(RefreshToken.revoked_at.is_(None)).count()
        assert live == 0

    def test_token_single_use(self, client: TestClient, test_user: dict, outbox):
        token = request_reset(client, outbox, test_user["email"])
        first = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert first.status_code == 200
        second = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "Another789A"})
        assert second.status_code == 400
        assert second.json()["code"] == "INVALID_RESET_TOKEN"

    def test_new_reset_link_revokes_older_ones(self, client: TestClient, test_user: dict, outbox):
        """Completing a reset also kills any other outstanding reset link."""
        older = request_reset(client, outbox, test_user["email"])
        newer = request_reset(client, outbox, test_user["email"])
        client.post("/api/v1/auth/reset-password", json={"token": newer, "new_password": NEW_PASSWORD})
        response = client.post("/api/v1/auth/reset-password", json={"token": older, "new_password": "Another789A"})
        assert response.status_code == 400

    def test_weak_password_keeps_token(self, client: TestClient, test_user: dict, outbox):
        token = request_reset(client, outbox, test_user["email"])
        response = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "weak"})
        assert response.status_code == 400
        assert response.json()["code"] == "WEAK_PASSWORD"
        response = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert response.status_code == 200

    def test_invalid_token(self, client: TestClient):
        response = client.post("/api/v1/auth/reset-password", json={"token": "nope", "new_password": NEW_PASSWORD})
        assert response.status_code == 400

    def test_expired_token(self, client: TestClient, test_user: dict, outbox, db_session: Session):
        token = request_reset(client, outbox, test_user["email"])
        row = db_session.query(RefreshToken).filter_by(purpose=TokenPurpose.PASSWORD_RESET).one()
        row.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()
        response = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert response.status_code == 400

    def test_reset_is_audited(self, client: TestClient, test_user: dict, outbox, db_session: Session):
        token = request_reset(client, outbox, test_user["email"])
        client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        entry = db_session.query(AuditLog).filter_by(action=AuditAction.USER_PASSWORD_CHANGE).one()
        assert entry.user_id == test_user["user_id"]
