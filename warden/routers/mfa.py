"""MFA setup and second-factor login endpoints."""

from fastapi import APIRouter, Depends, Request

from warden.dependencies import get_auth_service, get_client, get_current_user, get_mfa_service
from warden.models.user import User
from warden.rate_limit import limiter
from warden.routers.auth import login_response
from warden.schemas.auth import LoginResponse, MessageResponse
from warden.schemas.mfa import MfaBackupLoginRequest, MfaCodeRequest, MfaLoginRequest, MfaSetupResponse, MfaStatusResponse
from warden.services.audit import ClientContext
from warden.services.auth import AuthService
from warden.services.mfa import MfaService

router = APIRouter(prefix="/api/v1/auth/mfa", tags=["MFA"])


@router.post("/setup", response_model=MfaSetupResponse)
@limiter.limit("5/minute")
def setup(
    request: Request,
    user: User = Depends(get_current_user),
    client: ClientContext = Depends(get_client),
    mfa: MfaService = Depends(get_mfa_service),
) -> MfaSetupResponse:
    """Start MFA setup. Backup codes are shown only in this response."""
    result = mfa.setup(user, client)
    return MfaSetupResponse(
        secret=result.secret,
        qr_code_url=result.otpauth_url,
        qr_code=result.qr_code,
        backup_codes=result.backup_codes,
    )


@router.post("/verify-setup", response_model=MessageResponse)
@limiter.limit("10/minute")
def verify_setup(
    request: Request,
    body: MfaCodeRequest,
    user: User = Depends(get_current_user),
    client: ClientContext = Depends(get_client),
    mfa: MfaService = Depends(get_mfa_service),
) -> MessageResponse:
    """Confirm the authenticator app with a first code and enable MFA."""
    mfa.verify_setup(user, body.code, client)
    return MessageResponse(message="MFA enabled successfully")


@router.get("/status", response_model=MfaStatusResponse)
def mfa_status(user: User = Depends(get_current_user), mfa: MfaService = Depends(get_mfa_service)) -> MfaStatusResponse:
    state = mfa.setup_state(user)
    return MfaStatusResponse(
        enabled=bool(user.mfa_enabled),
        state=str(state),
        remaining_backup_codes=mfa.remaining_backup_codes(user.id),
    )


@router.post("/verify-login", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
def verify_login(
    request: Request,
    body: MfaLoginRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Complete a login with the temp token and a TOTP code."""
    return login_response(auth.complete_mfa_login(body.temp_token, body.code, client))


@router.post("/verify-backup-code", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
def verify_backup_code(
    request: Request,
    body: MfaBackupLoginRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Complete a login with the temp token and a single-use backup code."""
    return login_response(auth.complete_backup_code_login(body.temp_token, body.backup_code, client))
