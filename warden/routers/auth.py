"""Authentication API endpoints."""

from fastapi import APIRouter, Depends, Request, status
from starlette.concurrency import run_in_threadpool

from warden.dependencies import get_auth_service, get_client, get_current_user, get_throttle
from warden.exceptions import BadRequestError, UnauthorizedError
from warden.models.user import User
from warden.rate_limit import limiter
from warden.schemas.auth import (
    CaptchaResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LoginStatusResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    TokenResponse,
    TokenVerifyResponse,
    UserResponse,
    VerifyEmailRequest,
)
from warden.services.audit import ClientContext
from warden.services.auth import AuthService, LoginResult
from warden.services.jwt import get_jwt_service
from warden.services.login_throttle import CaptchaChallenge, LoginThrottle

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def captcha_response(challenge: CaptchaChallenge) -> CaptchaResponse:
    return CaptchaResponse(captcha_id=challenge.captcha_id, question=challenge.question, expires_at=challenge.expires_at)


def captcha_payload(challenge: CaptchaChallenge) -> dict:
    return captcha_response(challenge).model_dump(by_alias=True)


def login_response(result: LoginResult) -> LoginResponse:
    if result.mfa_required:
        return LoginResponse(mfa_required=True, temp_token=result.temp_token)
    tokens = result.tokens
    return LoginResponse(
        access_token=tokens.access_token,  # type: ignore[union-attr]
        refresh_token=tokens.refresh_token,  # type: ignore[union-attr]
        token_type=tokens.token_type,  # type: ignore[union-attr]
        expires_in=tokens.expires_in,  # type: ignore[union-attr]
        user=UserResponse.model_validate(result.user),
        remaining_backup_codes=result.remaining_backup_codes,
    )


def authenticate(auth: AuthService, body: LoginRequest, client: ClientContext) -> LoginResponse:
    """Password check and session issue. Touches the database, so it runs in the threadpool."""
    return login_response(auth.login(body.email, body.password, client, remember_me=body.remember_me))


@router.post("/register", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register(
    request: Request,
    body: RegisterRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Register a pending account and send its verification email."""
    message = auth.register(body.email, body.password, body.password_confirm, body.display_name, client)
    return MessageResponse(message=message)


@router.post("/verify-email", response_model=MessageResponse)
@limiter.limit("10/minute")
def verify_email(
    request: Request,
    body: VerifyEmailRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Activate an account with the emailed verification token."""
    return MessageResponse(message=auth.verify_email(body.token, client))


@router.post("/resend-verification", response_model=MessageResponse)
@limiter.limit("3/minute")
def resend_verification(
    request: Request,
    body: ResendVerificationRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    return MessageResponse(message=auth.resend_verification(body.email, client))


@router.get("/login-status", response_model=LoginStatusResponse)
def login_status(
    client: ClientContext = Depends(get_client),
    throttle: LoginThrottle = Depends(get_throttle),
) -> LoginStatusResponse:
    """Whether the caller's address must solve a CAPTCHA before logging in."""
    current = throttle.get_status(client.throttle_key)
    return LoginStatusResponse(
        requires_captcha=current.requires_captcha,
        delay_seconds=current.delay_seconds,
        failed_attempts=current.failed_attempts,
    )


@router.get("/captcha", response_model=CaptchaResponse)
@limiter.limit("20/minute")
def captcha(request: Request, throttle: LoginThrottle = Depends(get_throttle)) -> CaptchaResponse:
    """Issue a fresh arithmetic challenge."""
    return captcha_response(throttle.generate_captcha())


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
async def login(
    request: Request,
    body: LoginRequest,
    client: ClientContext = Depends(get_client),
    throttle: LoginThrottle = Depends(get_throttle),
    auth: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate with email and password.

    Once the caller's address is gated a solved CAPTCHA is required and a
    fixed delay is applied before the password is checked.
    """
    ip = client.throttle_key
    gate = throttle.get_status(ip)
    if gate.requires_captcha:
        if not body.captcha_id or not body.captcha_answer:
            raise BadRequestError(
                "CAPTCHA required",
                code="CAPTCHA_REQUIRED",
                requiresCaptcha=True,
                captcha=captcha_payload(throttle.generate_captcha()),
                delaySeconds=gate.delay_seconds,
            )
        if not throttle.verify_captcha(body.captcha_id, body.captcha_answer):
            raise BadRequestError(
                "Incorrect CAPTCHA answer",
                code="CAPTCHA_INVALID",
                requiresCaptcha=True,
                captcha=captcha_payload(throttle.generate_captcha()),
                delaySeconds=gate.delay_seconds,
            )
        await throttle.apply_delay(ip)

    try:
        response = await run_in_threadpool(authenticate, auth, body, client)
    except UnauthorizedError as e:
        after = throttle.record_failed_attempt(ip)
        if after.requires_captcha:
            raise UnauthorizedError(
                e.message,
                code=e.code,
                requiresCaptcha=True,
                captcha=captcha_payload(throttle.generate_captcha()),
                delaySeconds=after.delay_seconds,
                failedAttempts=after.failed_attempts,
            ) from None
        raise

    throttle.clear_attempts(ip)
    return response


@router.post("/refresh", response_model=TokenResponse)
@limiter.limit("30/minute")
def refresh(
    request: Request,
    body: RefreshRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Exchange a refresh token for a new access token and a rotated refresh token."""
    tokens = auth.refresh(body.refresh_token, client)
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
    )


@router.post("/logout", response_model=MessageResponse)
@limiter.limit("30/minute")
def logout(
    request: Request,
    body: LogoutRequest,
    user: User = Depends(get_current_user),
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    auth.logout(user.id, body.refresh_token, client)
    return MessageResponse(message="Logged out successfully")


@router.post("/forgot-password", response_model=MessageResponse)
@limiter.limit("3/minute")
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Request a password reset link. The answer never reveals whether the email exists."""
    return MessageResponse(message=auth.forgot_password(body.email, client))


@router.post("/reset-password", response_model=MessageResponse)
@limiter.limit("5/minute")
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    client: ClientContext = Depends(get_client),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password with a reset token. Every session of the user is revoked."""
    return MessageResponse(message=auth.reset_password(body.token, body.new_password, client))


@router.get("/verify", response_model=TokenVerifyResponse)
def verify_token(token: str) -> TokenVerifyResponse:
    """Verify an access token and return its claims."""
    payload = get_jwt_service().decode_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN")
    return TokenVerifyResponse(valid=True, user_id=payload["sub"], email=payload["email"], expires_at=payload["exp"])


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)
