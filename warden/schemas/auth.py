"""Pydantic schemas for authentication endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from warden.models.enums import UserStatus


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False
    captcha_id: str | None = None
    captcha_answer: str | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    display_name: str
    status: UserStatus
    mfa_enabled: bool
    email_verified_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginResponse(BaseModel):
    """Full tokens, or ``mfaRequired`` with a temp token and nothing else."""

    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    user: UserResponse | None = None
    mfa_required: bool = Field(False, alias="mfaRequired")
    temp_token: str | None = Field(None, alias="tempToken")
    remaining_backup_codes: int | None = Field(None, alias="remainingBackupCodes")

    model_config = {"populate_by_name": True}


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str


class RegisterRequest(BaseModel):
    email: str
    password: str
    password_confirm: str
    display_name: str = Field(min_length=1, max_length=256)


class VerifyEmailRequest(BaseModel):
    token: str


class ResendVerificationRequest(BaseModel):
    email: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str


class MessageResponse(BaseModel):
    message: str


class CaptchaResponse(BaseModel):
    captcha_id: str = Field(alias="captchaId")
    question: str
    expires_at: datetime = Field(alias="expiresAt")

    model_config = {"populate_by_name": True}


class LoginStatusResponse(BaseModel):
    requires_captcha: bool = Field(alias="requiresCaptcha")
    delay_seconds: int = Field(alias="delaySeconds")
    failed_attempts: int = Field(alias="failedAttempts")

    model_config = {"populate_by_name": True}


class TokenVerifyResponse(BaseModel):
    valid: bool
    user_id: str
    email: str
    expires_at: int
