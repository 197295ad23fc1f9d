"""Configuration settings for Warden."""

import os
import re
import secrets
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}
DEFAULT_DURATION_SECONDS = 24 * 60 * 60


def parse_duration(value: str) -> int:
    """Parse a duration such as "15m", "24h" or "30d" into seconds.

    Unparseable values fall back to 24 hours.
    """
    match = _DURATION_RE.match(value.strip())
    if not match:
        return DEFAULT_DURATION_SECONDS
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./warden.db")

    # Access / refresh tokens
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    JWT_ACCESS_EXPIRY: str = os.getenv("JWT_ACCESS_EXPIRY", "15m")
    JWT_REFRESH_EXPIRY_SHORT: str = os.getenv("JWT_REFRESH_EXPIRY_SHORT", "24h")
    JWT_REFRESH_EXPIRY_LONG: str = os.getenv("JWT_REFRESH_EXPIRY_LONG", "30d")

    # MFA
    MFA_TEMP_TOKEN_SECRET: str = os.getenv("MFA_TEMP_TOKEN_SECRET", "")
    MFA_TEMP_TOKEN_SHARES_JWT_SECRET: bool = _env_bool("MFA_TEMP_TOKEN_SHARES_JWT_SECRET", "false")
    MFA_TEMP_TOKEN_EXPIRY: int = int(os.getenv("MFA_TEMP_TOKEN_EXPIRY", "300"))
    MFA_MAX_ATTEMPTS: int = int(os.getenv("MFA_MAX_ATTEMPTS", "5"))
    MFA_LOCKOUT_DURATION: int = int(os.getenv("MFA_LOCKOUT_DURATION", "900"))
    MFA_ISSUER: str = os.getenv("MFA_ISSUER", "Warden")

    # Passwords
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    PASSWORD_MIN_LENGTH: int = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))
    PASSWORD_REQUIRE_UPPERCASE: bool = _env_bool("PASSWORD_REQUIRE_UPPERCASE", "true")
    PASSWORD_REQUIRE_LOWERCASE: bool = _env_bool("PASSWORD_REQUIRE_LOWERCASE", "true")
    PASSWORD_REQUIRE_NUMBERS: bool = _env_bool("PASSWORD_REQUIRE_NUMBERS", "true")
    PASSWORD_REQUIRE_SPECIAL: bool = _env_bool("PASSWORD_REQUIRE_SPECIAL", "false")

    # Login throttle
    CAPTCHA_THRESHOLD: int = int(os.getenv("CAPTCHA_THRESHOLD", "2"))
    CAPTCHA_DELAY_SECONDS: int = int(os.getenv("CAPTCHA_DELAY_SECONDS", "10"))
    CAPTCHA_EXPIRY: int = int(os.getenv("CAPTCHA_EXPIRY", "300"))
    LOGIN_ATTEMPT_WINDOW: int = int(os.getenv("LOGIN_ATTEMPT_WINDOW", "900"))

    # Registration / password reset
    VERIFICATION_TOKEN_EXPIRY: str = os.getenv("VERIFICATION_TOKEN_EXPIRY", "24h")
    PASSWORD_RESET_EXPIRY: str = os.getenv("PASSWORD_RESET_EXPIRY", "1h")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Email
    EMAIL_PROVIDER: str = os.getenv("EMAIL_PROVIDER", "console")
    BREVO_API_KEY: str = os.getenv("BREVO_API_KEY", "")
    EMAIL_FROM_ADDRESS: str = os.getenv("EMAIL_FROM_ADDRESS", "")
    EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "Warden")

    # Audit / maintenance
    AUDIT_LOG_ENABLED: bool = _env_bool("AUDIT_LOG_ENABLED", "true")
    CLEANUP_ENABLED: bool = _env_bool("CLEANUP_ENABLED", "true")
    THROTTLE_CLEANUP_INTERVAL: int = int(os.getenv("THROTTLE_CLEANUP_INTERVAL", "60"))
    TOKEN_CLEANUP_INTERVAL: int = int(os.getenv("TOKEN_CLEANUP_INTERVAL", "3600"))

    # Application
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = _env_bool("DEBUG", "false")

    def __init__(self) -> None:
        self._generated_jwt_secret = not self.JWT_SECRET_KEY
        if self._generated_jwt_secret:
            self.JWT_SECRET_KEY = secrets.token_urlsafe(32)
        self._generated_mfa_secret = False
        if self.MFA_TEMP_TOKEN_SHARES_JWT_SECRET:
            self.MFA_TEMP_TOKEN_SECRET = self.JWT_SECRET_KEY
        elif not self.MFA_TEMP_TOKEN_SECRET:
            self._generated_mfa_secret = True
            self.MFA_TEMP_TOKEN_SECRET = secrets.token_urlsafe(32)

    @property
    def access_token_ttl(self) -> int:
        return parse_duration(self.JWT_ACCESS_EXPIRY)

    def refresh_token_ttl(self, remember_me: bool) -> int:
        """Session lifetime in seconds, longer when remember-me was selected."""
        return parse_duration(self.JWT_REFRESH_EXPIRY_LONG if remember_me else self.JWT_REFRESH_EXPIRY_SHORT)

    @property
    def verification_token_ttl(self) -> int:
        return parse_duration(self.VERIFICATION_TOKEN_EXPIRY)

    @property
    def password_reset_ttl(self) -> int:
        return parse_duration(self.PASSWORD_RESET_EXPIRY)

    def validate(self) -> list[str]:
        """Validate settings and return list of warnings."""
        errors = []
        if self._generated_jwt_secret:
            errors.append("JWT_SECRET_KEY is not set - using auto-generated key (not persistent across restarts)")
        if self._generated_mfa_secret:
            errors.append("MFA_TEMP_TOKEN_SECRET is not set - using auto-generated key (not persistent across restarts)")
        if self.MFA_TEMP_TOKEN_SHARES_JWT_SECRET:
            errors.append("MFA temp tokens share JWT_SECRET_KEY - a leaked key compromises both token kinds")
        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
