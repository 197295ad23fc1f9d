"""Authentication orchestrator: login, refresh, logout, password reset, registration."""

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from warden.config import Settings, get_settings
from warden.database import transaction
from warden.exceptions import (
    BadRequestError,
    ConflictError,
    EmailDeliveryError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from warden.models.enums import AuditAction, AuditLevel, SecondFactorMethod, TokenPurpose, UserStatus
from warden.models.user import User
from warden.services.audit import AuditService, ClientContext
from warden.services.email import EmailSender
from warden.services.jwt import JWTService
from warden.services.mfa import LOCKED_MESSAGE, MfaService, SecondFactorResult
from warden.services.password import PasswordHasher
from warden.services.session_store import SessionStore, hash_token, parse_browser, parse_device

logger = logging.getLogger("warden")

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"
RESET_PASSWORD_MESSAGE = "Password has been reset successfully"
REGISTER_MESSAGE = "Registration successful. Please check your email to verify your account."
RESEND_MESSAGE = "If the email exists and is not verified, a new verification email has been sent."
VERIFIED_MESSAGE = "Email verified successfully. You can now log in."
VERIFICATION_TOKEN_BYTES = 32

_dummy_hashes: dict[int, str] = {}


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class LoginResult:
    """Either a full token pair, or an MFA challenge carrying a temp token."""

    user: User
    tokens: TokenPair | None = None
    mfa_required: bool = False
    temp_token: str | None = None
    method: SecondFactorMethod | None = None
    remaining_backup_codes: int | None = None


@dataclass
class SessionInfo:
    id: int
    device: str
    browser: str
    ip: str
    last_activity: datetime
    created_at: datetime
    current: bool = False


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _first_name(user: User) -> str:
    name = (user.display_name or "").strip()
    return name.split(" ")[0] if name else user.email.split("@")[0]


class AuthService:
    """Composes hasher, session store, MFA engine, codec, audit and email."""

    def __init__(
        self,
        db: Session,
        hasher: PasswordHasher,
        jwt_service: JWTService,
        sessions: SessionStore,
        mfa: MfaService,
        audit: AuditService,
        email_sender: EmailSender,
        settings: Settings | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db
        self.hasher = hasher
        self.jwt = jwt_service
        self.sessions = sessions
        self.mfa = mfa
        self.audit = audit
        self.email_sender = email_sender
        self.settings = settings or get_settings()
        self._now = now

    # --- Lookups ---

    def find_user_by_email(self, email: str) -> User | None:
        return (
            self.db.execute(select(User).where(func.lower(User.email) == normalize_email(email), User.deleted_at.is_(None)))
            .scalars()
            .first()
        )

    def get_active_user(self, user_id: int) -> User | None:
        user = self.db.get(User, user_id)
        if user is None or user.deleted_at is not None or user.status != UserStatus.ACTIVE:
            return None
        return user

    def _dummy_hash(self) -> str:
        """A real hash at the configured cost, compared against for unknown emails."""
        if self.hasher.rounds not in _dummy_hashes:
            _dummy_hashes[self.hasher.rounds] = self.hasher.hash(secrets.token_hex(16))
        return _dummy_hashes[self.hasher.rounds]

    def _require_strong_password(self, password: str) -> None:
        validation = self.hasher.validate(password)
        if not validation.valid:
            raise BadRequestError("Password does not meet requirements", code="WEAK_PASSWORD", errors=validation.errors)

    # --- Login ---

    def _login_failed(self, email: str, reason: str, client: ClientContext, user_id: int | None = None) -> UnauthorizedError:
        self.audit.log(
            AuditAction.USER_LOGIN_FAILED,
            user_id=user_id,
            resource="auth",
            details={"email": normalize_email(email), "reason": reason},
            client=client,
            level=AuditLevel.WARN,
        )
        logger.warning("Failed login for %s: %s", normalize_email(email), reason)
        return UnauthorizedError(INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")

    def login(self, email: str, password: str, client: ClientContext, remember_me: bool = False) -> LoginResult:
        """Check credentials, then either issue tokens or demand a second factor.

        Unknown email, wrong password and a non-active account all raise the
        same UnauthorizedError.
        """
        user = self.find_user_by_email(email)
        if user is None:
            self.hasher.verify(password, self._dummy_hash())
            raise self._login_failed(email, "unknown_email", client)

        if not self.hasher.verify(password, user.password_hash):
            raise self._login_failed(email, "invalid_password", client, user.id)

        if user.status != UserStatus.ACTIVE:
            raise self._login_failed(email, f"status_{user.status}", client, user.id)

        if self.hasher.needs_rehash(user.password_hash):
            with transaction(self.db):
                user.password_hash = self.hasher.hash(password)
            logger.info("Rehashed password for user %s at cost %d", user.id, self.hasher.rounds)

        if user.mfa_enabled:
            locked_until = self.mfa.locked_until(user.id)
            if locked_until is not None:
                raise ForbiddenError(LOCKED_MESSAGE, code="MFA_LOCKED", lockedUntil=locked_until)
            temp_token = self.mfa.issue_temp_token(user, remember_me)
            self.audit.log(AuditAction.MFA_LOGIN_REQUIRED, user_id=user.id, resource="auth", client=client)
            return LoginResult(user=user, mfa_required=True, temp_token=temp_token)

        tokens = self._issue_tokens(user, client, remember_me)
        self.audit.log(
            AuditAction.USER_LOGIN,
            user_id=user.id,
            resource="auth",
            details={"rememberMe": remember_me},
            client=client,
        )
        logger.info("User logged in: %s", user.email)
        return LoginResult(user=user, tokens=tokens)

    def _issue_tokens(self, user: User, client: ClientContext, remember_me: bool) -> TokenPair:
        expires_at = self._now() + timedelta(seconds=self.settings.refresh_token_ttl(remember_me))
        with transaction(self.db):
            issued = self.sessions.open_session(user.id, expires_at, client, remember_me)
            user.last_login_at = self._now()
        return TokenPair(
            access_token=self.jwt.create_token(user.id, user.email),
            refresh_token=issued.token,
            expires_in=self.jwt.ttl_seconds,
        )

    def _complete_second_factor(self, result: SecondFactorResult, client: ClientContext) -> LoginResult:
        tokens = self._issue_tokens(result.user, client, result.remember_me)
        self.audit.log(
            AuditAction.USER_LOGIN,
            user_id=result.user.id,
            resource="auth",
            details={"mfa": str(result.method), "rememberMe": result.remember_me},
            client=client,
        )
        return LoginResult(
            user=result.user,
            tokens=tokens,
            method=result.method,
            remaining_backup_codes=result.remaining_backup_codes,
        )

    def complete_mfa_login(self, temp_token: str, code: str, client: ClientContext) -> LoginResult:
        return self._complete_second_factor(self.mfa.verify_login(temp_token, code, client), client)

    def complete_backup_code_login(self, temp_token: str, backup_code: str, client: ClientContext) -> LoginResult:
        return self._complete_second_factor(self.mfa.verify_backup_login(temp_token, backup_code, client), client)

    # --- Refresh / logout ---

    def refresh(self, refresh_token: str, client: ClientContext) -> TokenPair:
        """Rotate a live refresh token and issue a new access token."""
        row = self.sessions.find_live_by_token_hash(hash_token(refresh_token))
        if row is None:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

        user = self.get_active_user(row.user_id)
        if user is None:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

        expires_at = self._now() + timedelta(seconds=self.settings.refresh_token_ttl(row.remember_me))
        with transaction(self.db):
            new_token = self.sessions.reuse_session(row.id, user.id, expires_at)
        if new_token is None:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN, code="INVALID_REFRESH_TOKEN")

        self.audit.log(AuditAction.TOKEN_REFRESH, user_id=user.id, resource="session", resource_id=row.id, client=client)
        logger.debug("Token refreshed for user %s (rememberMe: %s)", user.id, row.remember_me)
        return TokenPair(
            access_token=self.jwt.create_token(user.id, user.email),
            refresh_token=new_token,
            expires_in=self.jwt.ttl_seconds,
        )

    def logout(self, user_id: int, refresh_token: str, client: ClientContext) -> None:
        """Revoke the caller's refresh token. Succeeds even if it was already invalid."""
        with transaction(self.db):
            self.sessions.revoke_by_token_hash(hash_token(refresh_token), user_id)
        self.audit.log(AuditAction.USER_LOGOUT, user_id=user_id, resource="auth", client=client)
        logger.info("User logged out (ID: %s)", user_id)

    # --- Session management ---

    def list_sessions(self, user_id: int, current_token: str | None = None) -> list[SessionInfo]:
        current_hash = hash_token(current_token) if current_token else None
        return [
            SessionInfo(
                id=row.id,
                device=parse_device(row.device_info),
                browser=row.browser or parse_browser(row.device_info),
                ip=row.ip_address or "Unknown",
                last_activity=row.last_used_at or row.created_at,
                created_at=row.created_at,
                current=current_hash is not None and row.token_hash == current_hash,
            )
            for row in self.sessions.list_active(user_id)
        ]

    def terminate_session(self, user_id: int, session_id: int, client: ClientContext) -> None:
        row = self.sessions.get(session_id)
        if row is None or row.purpose != TokenPurpose.SESSION:
            raise NotFoundError("Session not found", code="SESSION_NOT_FOUND")
        if row.user_id != user_id:
            raise ForbiddenError("Session does not belong to you", code="SESSION_FORBIDDEN")
        if not row.is_live(self._now()):
            raise NotFoundError("Session not found or already terminated", code="SESSION_NOT_FOUND")

        with transaction(self.db):
            revoked = self.sessions.revoke(session_id, user_id)
        if not revoked:
            raise NotFoundError("Session not found or already terminated", code="SESSION_NOT_FOUND")

        self.audit.log(
            AuditAction.SESSION_TERMINATED,
            user_id=user_id,
            resource="session",
            resource_id=session_id,
            details={"sessionId": session_id},
            client=client,
        )
        logger.info("Session %s terminated for user %s", session_id, user_id)

    def terminate_all_sessions(self, user_id: int, current_token: str | None, client: ClientContext) -> int:
        """Revoke every session, keeping the caller's own when its token is given."""
        except_hash = hash_token(current_token) if current_token else None
        with transaction(self.db):
            count = self.sessions.revoke_all(user_id, except_token_hash=except_hash)
        self.audit.log(
            AuditAction.ALL_SESSIONS_TERMINATED,
            user_id=user_id,
            resource="session",
            details={"count": count, "preservedCurrent": except_hash is not None},
            client=client,
        )
        logger.info("All sessions (%d) terminated for user %s", count, user_id)
        return count

    # --- Password reset ---

    def forgot_password(self, email: str, client: ClientContext) -> str:
        """Always answers the same, whether or not the email is known."""
        user = self.find_user_by_email(email)
        if user is None:
            return FORGOT_PASSWORD_MESSAGE

        expires_at = self._now() + timedelta(seconds=self.settings.password_reset_ttl)
        with transaction(self.db):
            token = self.sessions.create_reset_token(user.id, expires_at)

        link = f"{self.settings.FRONTEND_URL.rstrip('/')}/reset-password?token={token}"
        try:
            self.email_sender.send_password_reset_email(user.email, _first_name(user), link)
        except EmailDeliveryError:
            logger.error("Failed to send password reset email to user %s", user.id, exc_info=True)

        self.audit.log(AuditAction.PASSWORD_RESET_REQUESTED, user_id=user.id, resource="user", client=client)
        logger.info("Password reset requested for user %s", user.id)
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, token: str, new_password: str, client: ClientContext) -> str:
        """Set a new password and log the user out everywhere."""
        self._require_strong_password(new_password)

        reset = self.sessions.find_live_reset_token(token)
        user = self.db.get(User, reset.user_id) if reset is not None else None
        if reset is None or user is None or user.deleted_at is not None:
            raise BadRequestError("Invalid or expired reset token", code="INVALID_RESET_TOKEN")

        with transaction(self.db):
            if not self.sessions.consume_reset_token(reset.id, user.id):
                raise BadRequestError("Invalid or expired reset token", code="INVALID_RESET_TOKEN")
            user.password_hash = self.hasher.hash(new_password)
            revoked = self.sessions.revoke_all(user.id, include_reset=True)

        self.audit.log(
            AuditAction.USER_PASSWORD_CHANGE,
            user_id=user.id,
            resource="user",
            resource_id=user.id,
            details={"via": "password_reset", "sessionsRevoked": revoked},
            client=client,
        )
        logger.info("Password reset completed for user %s", user.id)
        return RESET_PASSWORD_MESSAGE

    # --- Registration / verification ---

    def _new_verification_token(self, user: User) -> str:
        token = secrets.token_hex(VERIFICATION_TOKEN_BYTES)
        user.verification_token_hash = hash_token(token)
        user.verification_token_expires_at = self._now() + timedelta(seconds=self.settings.verification_token_ttl)
        return token

    def _send_verification(self, user: User, token: str) -> None:
        link = f"{self.settings.FRONTEND_URL.rstrip('/')}/verify-email?token={token}"
        try:
            self.email_sender.send_verification_email(user.email, _first_name(user), link)
        except EmailDeliveryError:
            logger.error("Failed to send verification email to user %s", user.id, exc_info=True)

    def _resend_verification(self, user: User, client: ClientContext) -> None:
        with transaction(self.db):
            token = self._new_verification_token(user)
        self._send_verification(user, token)
        self.audit.log(AuditAction.VERIFICATION_RESENT, user_id=user.id, resource="user", resource_id=user.id, client=client)

    def register(
        self,
        email: str,
        password: str,
        password_confirm: str,
        display_name: str,
        client: ClientContext,
    ) -> str:
        """Create a pending account and mail its verification link."""
        if password != password_confirm:
            raise BadRequestError("Passwords do not match", code="PASSWORD_MISMATCH")
        self._require_strong_password(password)

        existing = self.find_user_by_email(email)
        if existing is not None:
            if existing.status == UserStatus.PENDING:
                self._resend_verification(existing, client)
                return REGISTER_MESSAGE
            raise ConflictError("Email already exists", code="EMAIL_EXISTS")

        user = User(
            email=normalize_email(email),
            password_hash=self.hasher.hash(password),
            display_name=display_name.strip(),
            status=UserStatus.PENDING,
            mfa_enabled=False,
        )
        token = self._new_verification_token(user)
        try:
            with transaction(self.db):
                self.db.add(user)
        except IntegrityError as e:
            raise ConflictError("Email already exists", code="EMAIL_EXISTS") from e

        self._send_verification(user, token)
        self.audit.log(
            AuditAction.USER_REGISTER,
            user_id=user.id,
            resource="user",
            resource_id=user.id,
            details={"email": user.email},
            client=client,
        )
        logger.info("User registered: %s", user.email)
        return REGISTER_MESSAGE

    def verify_email(self, token: str, client: ClientContext) -> str:
        user = (
            self.db.execute(
                select(User).where(
                    User.verification_token_hash == hash_token(token),
                    User.status == UserStatus.PENDING,
                    User.verification_token_expires_at > self._now(),
                )
            )
            .scalars()
            .first()
        )
        if user is None:
            raise BadRequestError("Invalid or expired verification token", code="INVALID_VERIFICATION_TOKEN")

        with transaction(self.db):
            user.status = UserStatus.ACTIVE
            user.verification_token_hash = None
            user.verification_token_expires_at = None
            user.email_verified_at = self._now()

        self.audit.log(AuditAction.EMAIL_VERIFIED, user_id=user.id, resource="user", resource_id=user.id, client=client)
        logger.info("Email verified for user: %s", user.email)
        return VERIFIED_MESSAGE

    def resend_verification(self, email: str, client: ClientContext) -> str:
        user = self.find_user_by_email(email)
        if user is not None and user.status == UserStatus.PENDING:
            self._resend_verification(user, client)
        return RESEND_MESSAGE
