"""Closed enumerations shared by models and services."""

from enum import StrEnum


class UserStatus(StrEnum):
    """Account lifecycle state."""

    PENDING = "pending"  # registered, email not verified yet
    ACTIVE = "active"  # the only state allowed to complete login
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class TokenPurpose(StrEnum):
    """What a refresh_token row stands for."""

    SESSION = "session"
    PASSWORD_RESET = "password_reset"


class MfaSetupState(StrEnum):
    """Per-user progress through MFA setup."""

    NOT_CONFIGURED = "not_configured"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


class SecondFactorMethod(StrEnum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class AuditLevel(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class AuditAction(StrEnum):
    """Audit event kinds recorded by the auth subsystem."""

    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOGOUT = "USER_LOGOUT"
    USER_REGISTER = "USER_REGISTER"
    VERIFICATION_RESENT = "VERIFICATION_RESENT"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    USER_PASSWORD_CHANGE = "USER_PASSWORD_CHANGE"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    ALL_SESSIONS_TERMINATED = "ALL_SESSIONS_TERMINATED"
    MFA_SETUP_INITIATED = "MFA_SETUP_INITIATED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_VERIFY_FAILED = "MFA_VERIFY_FAILED"
    MFA_LOGIN_REQUIRED = "MFA_LOGIN_REQUIRED"
    MFA_LOGIN_SUCCESS = "MFA_LOGIN_SUCCESS"
    MFA_LOGIN_FAILED = "MFA_LOGIN_FAILED"
    MFA_LOCKOUT = "MFA_LOCKOUT"
