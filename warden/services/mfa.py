"""TOTP multi-factor authentication.

Setup: a secret and ten backup codes are written in one transaction while
``mfa_enabled`` stays false; a correct TOTP code then enables MFA.

Login: after the password step the caller holds a short-lived temp token.
A TOTP code or a backup code redeems it once. Failures are counted per user
and reaching ``max_attempts`` locks every second-factor attempt out until the
lockout elapses, whether or not the code presented would have been valid.
"""

import base64
import io
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pyotp
import qrcode
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.database import transaction
from warden.exceptions import BadRequestError, ConflictError, ForbiddenError, UnauthorizedError
from warden.models.backup_code import BackupCode
from warden.models.enums import AuditAction, AuditLevel, MfaSetupState, SecondFactorMethod, UserStatus
from warden.models.user import User
from warden.services.attempts import AttemptRecord, AttemptTracker, InMemoryAttemptTracker
from warden.services.audit import AuditService, ClientContext
from warden.services.jwt import MFA_TEMP_PREFIX, MFA_TEMP_PURPOSE, TokenCodec
from warden.services.password import PasswordHasher

logger = logging.getLogger("warden")

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
# No 0/O or 1/I
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOTP_VALID_WINDOW = 1
LOCKED_MESSAGE = "Account temporarily locked due to too many failed MFA attempts"


@dataclass
class MfaSetup:
    secret: str
    otpauth_url: str
    qr_code: str
    backup_codes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TempTokenClaims:
    user_id: int
    email: str
    remember_me: bool
    token_id: str


@dataclass
class SecondFactorResult:
    """A redeemed temp token: who logged in and how."""

    user: User
    method: SecondFactorMethod
    remember_me: bool = False
    remaining_backup_codes: int | None = None


def generate_secret() -> str:
    return pyotp.random_base32(length=32)


def verify_totp(secret: str, code: str, window: int = TOTP_VALID_WINDOW) -> bool:
    """Check a 6-digit code, tolerating one 30s step of clock drift either way."""
    code = code.strip()
    if not code.isdigit():
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=window)


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def qr_code_data_uri(uri: str) -> str:
    """Render the provisioning URI as a PNG data URI."""
    qr = qrcode.QRCode(version=1, error_correction=qrcode.constants.ERROR_CORRECT_L, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT, length: int = BACKUP_CODE_LENGTH) -> list[str]:
    """Pairwise-unique codes from the unambiguous alphabet."""
    codes: list[str] = []
    while len(codes) < count:
        code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        if code not in codes:
            codes.append(code)
    return codes


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").upper()


class MfaService:
    """MFA setup, second-factor verification and attempt lockout."""

    def __init__(
        self,
        db: Session,
        hasher: PasswordHasher,
        codec: TokenCodec,
        audit: AuditService,
        tracker: AttemptTracker,
        used_temp_tokens: AttemptTracker,
        issuer: str = "Warden",
        temp_token_ttl: int = 300,
        max_attempts: int = 5,
        lockout_seconds: int = 900,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db
        self.hasher = hasher
        self.codec = codec
        self.audit = audit
        self.tracker = tracker
        self.used_temp_tokens = used_temp_tokens
        self.issuer = issuer
        self.temp_token_ttl = temp_token_ttl
        self.max_attempts = max_attempts
        self.lockout = timedelta(seconds=lockout_seconds)
        self._now = now

    # --- Setup ---

    @staticmethod
    def setup_state(user: User) -> MfaSetupState:
        """Where the user stands in the setup flow."""
        if user.mfa_enabled:
            return MfaSetupState.ENABLED
        if user.mfa_secret:
            return MfaSetupState.PENDING_VERIFICATION
        return MfaSetupState.NOT_CONFIGURED

    def setup(self, user: User, client: ClientContext | None = None) -> MfaSetup:
        """Generate a secret and backup codes. MFA stays disabled until verified."""
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled. Disable it first to set up again.", code="MFA_ALREADY_ENABLED")

        secret = generate_secret()
        codes = generate_backup_codes()
        hashes = [self.hasher.hash(code) for code in codes]

        with transaction(self.db):
            user.mfa_secret = secret
            self.db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
            self.db.add_all(BackupCode(user_id=user.id, code_hash=code_hash) for code_hash in hashes)

        uri = provisioning_uri(secret, user.email, self.issuer)
        self.audit.log(
            AuditAction.MFA_SETUP_INITIATED,
            user_id=user.id,
            resource="mfa",
            details={"backupCodesGenerated": len(codes)},
            client=client,
        )
        logger.info("MFA setup initiated for user %s", user.id)
        return MfaSetup(secret=secret, otpauth_url=uri, qr_code=qr_code_data_uri(uri), backup_codes=codes)

    def verify_setup(self, user: User, code: str, client: ClientContext | None = None) -> None:
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled", code="MFA_ALREADY_ENABLED")
        if not user.mfa_secret:
            raise BadRequestError("MFA setup has not been initiated", code="MFA_SETUP_REQUIRED")
        if not verify_totp(user.mfa_secret, code):
            self.audit.log(
                AuditAction.MFA_VERIFY_FAILED,
                user_id=user.id,
                resource="mfa",
                details={"reason": "Invalid verification code"},
                client=client,
                level=AuditLevel.WARN,
            )
            raise BadRequestError("Invalid verification code", code="MFA_INVALID_CODE")

        with transaction(self.db):
            user.mfa_enabled = True
        self.audit.log(AuditAction.MFA_ENABLED, user_id=user.id, resource="mfa", client=client)
        logger.info("MFA enabled for user %s", user.id)

    # --- Backup codes ---

    def verify_backup_code(self, user_id: int, code: str) -> bool:
        """Consume the first unused code matching ``code``. Flushes, does not commit."""
        candidate = normalize_backup_code(code)
        rows = self.db.execute(
            select(BackupCode.id, BackupCode.code_hash).where(BackupCode.user_id == user_id, BackupCode.used.is_(False))
        ).all()
        for code_id, code_hash in rows:
            if not self.hasher.verify(candidate, code_hash):
                continue
            result = self.db.execute(
                update(BackupCode)
                .where(BackupCode.id == code_id, BackupCode.user_id == user_id, BackupCode.used.is_(False))
                .values(used=True, used_at=self._now())
            )
            if result.rowcount == 1:
                logger.info("Backup code used for user %s", user_id)
                return True
            # Consumed concurrently by another request
            return False
        return False

    def remaining_backup_codes(self, user_id: int) -> int:
        return self.db.execute(
            select(func.count(BackupCode.id)).where(BackupCode.user_id == user_id, BackupCode.used.is_(False))
        ).scalar_one()

    # --- Temp tokens ---

    def issue_temp_token(self, user: User, remember_me: bool = False) -> str:
        claims = {
            "userId": user.id,
            "email": user.email,
            "purpose": MFA_TEMP_PURPOSE,
            "rememberMe": remember_me,
            "jti": secrets.token_hex(16),
        }
        return MFA_TEMP_PREFIX + self.codec.encode(claims, self.temp_token_ttl)

    def validate_temp_token(self, temp_token: str) -> TempTokenClaims | None:
        """Claims of a live, unredeemed temp token, or None."""
        if not temp_token or not temp_token.startswith(MFA_TEMP_PREFIX):
            return None
        result = self.codec.decode(temp_token[len(MFA_TEMP_PREFIX) :])
        if not result.ok:
            logger.debug("Temp token rejected: %s", result.failure)
            return None
        claims = result.claims or {}
        user_id = claims.get("userId")
        token_id = claims.get("jti")
        if claims.get("purpose") != MFA_TEMP_PURPOSE or not isinstance(user_id, int) or not token_id:
            return None
        if self.used_temp_tokens.get(token_id, self._now()) is not None:
            return None
        return TempTokenClaims(
            user_id=user_id,
            email=str(claims.get("email", "")),
            remember_me=bool(claims.get("rememberMe", False)),
            token_id=token_id,
        )

    def _redeem_temp_token(self, claims: TempTokenClaims) -> None:
        """Mark the temp token used. Only one concurrent caller can win."""
        # A token never outlives its TTL, so holding the id that long is enough
        if not self.used_temp_tokens.claim(claims.token_id, self._now(), timedelta(seconds=self.temp_token_ttl + 1)):
            raise UnauthorizedError("Invalid or expired temporary token", code="MFA_TEMP_TOKEN_INVALID")

    def _release_temp_token(self, claims: TempTokenClaims) -> None:
        self.used_temp_tokens.clear(claims.token_id)

    # --- Attempt lockout ---

    def locked_until(self, user_id: int) -> datetime | None:
        """End of the user's lockout, or None when not locked out."""
        record = self.tracker.get(user_id, self._now())
        if record is None:
            return None
        return record.locked_until

    def is_locked_out(self, user_id: int) -> bool:
        return self.locked_until(user_id) is not None

    def remaining_attempts(self, user_id: int) -> int:
        record = self.tracker.get(user_id, self._now())
        if record is None:
            return self.max_attempts
        if record.locked_until is not None:
            return 0
        return max(0, self.max_attempts - record.count)

    def record_failed_attempt(self, user_id: int, client: ClientContext | None = None) -> AttemptRecord:
        now = self._now()
        # Failures below the threshold age out after one lockout period
        record = self.tracker.record(user_id, now, self.lockout)
        if record.count >= self.max_attempts:
            record = self.tracker.lock(user_id, now + self.lockout) or record
            logger.warning("User %s locked out after %d failed MFA attempts", user_id, record.count)
            self.audit.log(
                AuditAction.MFA_LOCKOUT,
                user_id=user_id,
                resource="mfa",
                details={"attempts": record.count, "lockedUntil": record.locked_until.isoformat()},
                client=client,
                level=AuditLevel.WARN,
            )
        return record

    def clear_attempts(self, user_id: int) -> None:
        self.tracker.clear(user_id)

    def cleanup(self) -> int:
        now = self._now()
        return self.tracker.cleanup(now) + self.used_temp_tokens.cleanup(now)

    # --- Login second factor ---

    def _begin_second_factor(self, temp_token: str, client: ClientContext | None) -> tuple[TempTokenClaims, User]:
        claims = self.validate_temp_token(temp_token)
        if claims is None:
            raise UnauthorizedError("Invalid or expired temporary token", code="MFA_TEMP_TOKEN_INVALID")

        if self.is_locked_out(claims.user_id):
            self.audit.log(
                AuditAction.MFA_LOGIN_FAILED,
                user_id=claims.user_id,
                resource="mfa",
                details={"reason": "Locked out"},
                client=client,
                level=AuditLevel.WARN,
            )
            raise ForbiddenError(LOCKED_MESSAGE, code="MFA_LOCKED", lockedUntil=self.locked_until(claims.user_id))

        user = self.db.get(User, claims.user_id)
        if user is None or user.status != UserStatus.ACTIVE or user.deleted_at is not None:
            raise UnauthorizedError("Invalid or expired temporary token", code="MFA_TEMP_TOKEN_INVALID")
        if not user.mfa_enabled or not user.mfa_secret:
            raise BadRequestError("MFA is not configured for this user", code="MFA_NOT_CONFIGURED")
        return claims, user

    def _fail_second_factor(self, user_id: int, reason: str, label: str, client: ClientContext | None) -> None:
        record = self.record_failed_attempt(user_id, client)
        remaining = 0 if record.locked_until is not None else max(0, self.max_attempts - record.count)
        self.audit.log(
            AuditAction.MFA_LOGIN_FAILED,
            user_id=user_id,
            resource="mfa",
            details={"reason": reason, "remainingAttempts": remaining},
            client=client,
            level=AuditLevel.WARN,
        )
        if remaining == 0:
            raise ForbiddenError(LOCKED_MESSAGE, code="MFA_LOCKED", lockedUntil=record.locked_until)
        raise UnauthorizedError(f"Invalid {label}. {remaining} attempts remaining.", code="MFA_INVALID_CODE")

    def verify_login(self, temp_token: str, code: str, client: ClientContext | None = None) -> SecondFactorResult:
        """Redeem a temp token with a TOTP code."""
        claims, user = self._begin_second_factor(temp_token, client)
        if not verify_totp(user.mfa_secret, code):
            self._fail_second_factor(user.id, "Invalid TOTP code", "MFA code", client)

        self._redeem_temp_token(claims)
        self.clear_attempts(user.id)
        self.audit.log(
            AuditAction.MFA_LOGIN_SUCCESS,
            user_id=user.id,
            resource="mfa",
            details={"method": SecondFactorMethod.TOTP},
            client=client,
        )
        logger.info("MFA login successful for user %s", user.id)
        return SecondFactorResult(user=user, method=SecondFactorMethod.TOTP, remember_me=claims.remember_me)

    def verify_backup_login(
        self, temp_token: str, backup_code: str, client: ClientContext | None = None
    ) -> SecondFactorResult:
        """Redeem a temp token with a backup code, consuming the code."""
        claims, user = self._begin_second_factor(temp_token, client)
        # Claimed before the code is consumed so a lost race never burns a code
        self._redeem_temp_token(claims)
        try:
            with transaction(self.db):
                matched = self.verify_backup_code(user.id, backup_code)
        except Exception:
            self._release_temp_token(claims)
            raise
        if not matched:
            self._release_temp_token(claims)
            self._fail_second_factor(user.id, "Invalid backup code", "backup code", client)

        self.clear_attempts(user.id)
        remaining = self.remaining_backup_codes(user.id)
        self.audit.log(
            AuditAction.MFA_LOGIN_SUCCESS,
            user_id=user.id,
            resource="mfa",
            details={"method": SecondFactorMethod.BACKUP_CODE, "remainingBackupCodes": remaining},
            client=client,
        )
        logger.info("MFA login successful for user %s using backup code (%d remaining)", user.id, remaining)
        return SecondFactorResult(
            user=user,
            method=SecondFactorMethod.BACKUP_CODE,
            remember_me=claims.remember_me,
            remaining_backup_codes=remaining,
        )


_mfa_attempt_tracker: InMemoryAttemptTracker | None = None
_used_temp_tokens: InMemoryAttemptTracker | None = None
_temp_token_codec: TokenCodec | None = None


def get_mfa_attempt_tracker() -> InMemoryAttemptTracker:
    """Get singleton per-user MFA attempt tracker."""
    global _mfa_attempt_tracker
    if _mfa_attempt_tracker is None:
        _mfa_attempt_tracker = InMemoryAttemptTracker()
    return _mfa_attempt_tracker


def get_used_temp_tokens() -> InMemoryAttemptTracker:
    """Get singleton registry of redeemed temp token ids."""
    global _used_temp_tokens
    if _used_temp_tokens is None:
        _used_temp_tokens = InMemoryAttemptTracker()
    return _used_temp_tokens


def get_temp_token_codec() -> TokenCodec:
    """Get singleton codec keyed with the MFA temp-token secret."""
    global _temp_token_codec
    if _temp_token_codec is None:
        settings = get_settings()
        _temp_token_codec = TokenCodec(settings.MFA_TEMP_TOKEN_SECRET, settings.JWT_ALGORITHM)
    return _temp_token_codec
