"""FastAPI dependencies: caller identity and per-request service wiring."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.database import get_db
from warden.exceptions import UnauthorizedError
from warden.models.enums import UserStatus
from warden.models.user import User
from warden.services.audit import ClientContext, client_context, get_audit_service
from warden.services.auth import AuthService
from warden.services.email import get_email_sender
from warden.services.jwt import get_jwt_service
from warden.services.login_throttle import LoginThrottle, get_login_throttle
from warden.services.mfa import MfaService, get_mfa_attempt_tracker, get_temp_token_codec, get_used_temp_tokens
from warden.services.password import get_password_hasher
from warden.services.session_store import SessionStore

REFRESH_TOKEN_HEADER = "X-Refresh-Token"


def get_client(request: Request) -> ClientContext:
    return client_context(request)


def get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_refresh_token(request: Request) -> str | None:
    """Refresh token the caller volunteers to identify its own session."""
    return request.headers.get(REFRESH_TOKEN_HEADER) or None


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Resolve the bearer access token to an active user. Raises 401 otherwise."""
    token = get_bearer_token(request)
    if not token:
        raise UnauthorizedError("Not authenticated", code="NOT_AUTHENTICATED")

    payload = get_jwt_service().decode_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN")

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN") from None

    user = db.get(User, user_id)
    if user is None or user.deleted_at is not None or user.status != UserStatus.ACTIVE:
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN")
    return user


def get_throttle() -> LoginThrottle:
    return get_login_throttle()


def get_mfa_service(db: Session = Depends(get_db)) -> MfaService:
    settings = get_settings()
    return MfaService(
        db=db,
        hasher=get_password_hasher(),
        codec=get_temp_token_codec(),
        audit=get_audit_service(db),
        tracker=get_mfa_attempt_tracker(),
        used_temp_tokens=get_used_temp_tokens(),
        issuer=settings.MFA_ISSUER,
        temp_token_ttl=settings.MFA_TEMP_TOKEN_EXPIRY,
        max_attempts=settings.MFA_MAX_ATTEMPTS,
        lockout_seconds=settings.MFA_LOCKOUT_DURATION,
    )


def get_auth_service(db: Session = Depends(get_db), mfa: MfaService = Depends(get_mfa_service)) -> AuthService:
    return AuthService(
        db=db,
        hasher=get_password_hasher(),
        jwt_service=get_jwt_service(),
        sessions=SessionStore(db),
        mfa=mfa,
        audit=mfa.audit,
        email_sender=get_email_sender(),
    )
