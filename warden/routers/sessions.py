"""Session management endpoints."""

from fastapi import APIRouter, Depends

from warden.dependencies import get_auth_service, get_client, get_current_refresh_token, get_current_user
from warden.models.user import User
from warden.schemas.auth import MessageResponse
from warden.schemas.session import SessionListResponse, SessionResponse, SessionsTerminatedResponse
from warden.services.audit import ClientContext
from warden.services.auth import AuthService

router = APIRouter(prefix="/api/v1/auth/sessions", tags=["Sessions"])


@router.get("", response_model=SessionListResponse)
def list_sessions(
    user: User = Depends(get_current_user),
    current_token: str | None = Depends(get_current_refresh_token),
    auth: AuthService = Depends(get_auth_service),
) -> SessionListResponse:
    """List live sessions, most recently used first."""
    sessions = [
        SessionResponse(
            id=s.id,
            device=s.device,
            browser=s.browser,
            ip=s.ip,
            last_activity=s.last_activity,
            created_at=s.created_at,
            current=s.current,
        )
        for s in auth.list_sessions(user.id, current_token)
    ]
    return SessionListResponse(sessions=sessions)


@router.delete("/{session_id}", response_model=MessageResponse)
def terminate_session(
    session_id: int,
    user: User = Depends(get_current_user),
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    auth.terminate_session(user.id, session_id, client)
    return MessageResponse(message="Session terminated")


@router.delete("", response_model=SessionsTerminatedResponse)
def terminate_all_sessions(
    keep_current: bool = True,
    user: User = Depends(get_current_user),
    current_token: str | None = Depends(get_current_refresh_token),
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> SessionsTerminatedResponse:
    """Revoke every session, sparing the caller's own unless ``keep_current`` is false."""
    count = auth.terminate_all_sessions(user.id, current_token if keep_current else None, client)
    return SessionsTerminatedResponse(message="All sessions terminated", count=count)
