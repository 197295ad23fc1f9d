"""Persistence for refresh-token sessions and password-reset artifacts.

Raw bearer tokens never touch the database; rows carry their SHA-256 hash.
Every write names the owning user id in its WHERE clause. Writes are flushed,
never committed: the caller owns the transaction.
"""

import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, delete, select, update
from sqlalchemy.orm import Session

from warden.models.enums import TokenPurpose
from warden.models.session import RefreshToken
from warden.models.user import User
from warden.services.audit import ClientContext

logger = logging.getLogger("warden")

SESSION_TOKEN_BYTES = 64
RESET_TOKEN_BYTES = 32

_BROWSERS = [
    (("Firefox/",), "Firefox"),
    (("Edg/",), "Edge"),
    (("OPR/", "Opera/"), "Opera"),
    (("Chrome/",), "Chrome"),
]
_OPERATING_SYSTEMS = [
    ("Windows NT 10", "Windows 10"),
    ("Windows NT 6.3", "Windows 8.1"),
    ("Windows NT 6.2", "Windows 8"),
    ("Windows NT 6.1", "Windows 7"),
    ("Windows", "Windows"),
    ("iPhone", "iPhone"),
    ("iPad", "iPad"),
    ("Mac OS X", "macOS"),
    ("Android", "Android"),
    ("Linux", "Linux"),
]


def hash_token(token: str) -> str:
    """Hex SHA-256 of a raw token, the only form stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    return secrets.token_hex(num_bytes)


def session_fingerprint(user_agent: str | None, ip: str | None) -> str:
    """Correlates repeated logins from one browser on one address."""
    return hash_token(f"{user_agent or 'unknown'}|{ip or 'unknown'}")


def parse_browser(user_agent: str | None) -> str:
    if not user_agent:
        return "Unknown"
    for markers, name in _BROWSERS:
        if any(marker in user_agent for marker in markers):
            return name
    if "Safari/" in user_agent and "Chrome" not in user_agent:
        return "Safari"
    if "MSIE" in user_agent or "Trident/" in user_agent:
        return "Internet Explorer"
    return "Unknown"


def parse_device(user_agent: str | None) -> str:
    """Human-readable label such as "Firefox on Linux"."""
    if not user_agent:
        return "Unknown Device"
    os_name = next((label for marker, label in _OPERATING_SYSTEMS if marker in user_agent), "Unknown")
    return f"{parse_browser(user_agent)} on {os_name}"


def owner_lock_statement(user_id: int) -> Select:
    return select(User.id).where(User.id == user_id).with_for_update()


@dataclass(frozen=True)
class IssuedSession:
    """A session row plus the raw token handed to the client once."""

    session_id: int
    token: str
    reused: bool = False


class SessionStore:
    """Session table access scoped by user id."""

    def __init__(self, db: Session, now: Callable[[], datetime] = datetime.utcnow) -> None:
        self.db = db
        self._now = now

    def _live_sessions(self, user_id: int) -> Select:
        now = self._now()
        return select(RefreshToken).where(
            RefreshToken.user_id == user_id,
            RefreshToken.purpose == TokenPurpose.SESSION,
            RefreshToken.revoked_at.is_(None),
            RefreshToken.expires_at > now,
        )

    def find_live_by_fingerprint(self, user_id: int, fingerprint: str, for_update: bool = False) -> RefreshToken | None:
        """Most recently used live session for this device, if any."""
        stmt = (
            self._live_sessions(user_id)
            .where(RefreshToken.fingerprint == fingerprint)
            .order_by(RefreshToken.last_used_at.desc(), RefreshToken.id.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def create_session(
        self,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        device_info: str | None,
        ip_address: str | None,
        browser: str | None,
        remember_me: bool,
        fingerprint: str | None,
    ) -> RefreshToken:
        """Insert a fresh session row and flush it to obtain its id."""
        now = self._now()
        row = RefreshToken(
            user_id=user_id,
            token_hash=token_hash,
            purpose=TokenPurpose.SESSION,
            expires_at=expires_at,
            device_info=device_info[:512] if device_info else None,
            ip_address=ip_address,
            browser=browser,
            remember_me=remember_me,
            fingerprint=fingerprint,
            created_at=now,
            last_used_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def reuse_session(
        self,
        session_id: int,
        user_id: int,
        expires_at: datetime,
        remember_me: bool | None = None,
    ) -> str | None:
        """Rotate a live session's token in place and extend its expiry.

        Returns the new raw token, or None when the row was revoked or
        expired in the meantime. A revocation is never undone.
        """
        now = self._now()
        token = generate_token()
        values = {"token_hash": hash_token(token), "expires_at": expires_at, "last_used_at": now}
        if remember_me is not None:
            values["remember_me"] = remember_me
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == session_id,
                RefreshToken.user_id == user_id,
                RefreshToken.purpose == TokenPurpose.SESSION,
                RefreshToken.revoked_at.is_(None),
                RefreshToken.expires_at > now,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            return None
        return token

    def open_session(
        self,
        user_id: int,
        expires_at: datetime,
        client: ClientContext,
        remember_me: bool = False,
    ) -> IssuedSession:
        """Reuse the live session for this device, or create one.

        Concurrent logins for one user are serialised on the owning user row,
        so two first logins from the same device cannot both insert.
        """
        fingerprint = session_fingerprint(client.user_agent, client.ip)
        self.lock_owner(user_id)
        existing = self.find_live_by_fingerprint(user_id, fingerprint, for_update=True)
        if existing is not None:
            token = self.reuse_session(existing.id, user_id, expires_at, remember_me)
            if token is not None:
                logger.debug("Reused session %s for user %s", existing.id, user_id)
                return IssuedSession(session_id=existing.id, token=token, reused=True)

        token = generate_token()
        row = self.create_session(
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=expires_at,
            device_info=client.user_agent,
            ip_address=client.ip,
            browser=parse_browser(client.user_agent),
            remember_me=remember_me,
            fingerprint=fingerprint,
        )
        logger.debug("Created session %s for user %s", row.id, user_id)
        return IssuedSession(session_id=row.id, token=token)

    def lock_owner(self, user_id: int) -> None:
        """Take a row lock on the user for the rest of the transaction."""
        self.db.execute(owner_lock_statement(user_id))

    def find_live_by_token_hash(self, token_hash: str) -> RefreshToken | None:
        now = self._now()
        return (
            self.db.execute(
                select(RefreshToken).where(
                    RefreshToken.token_hash == token_hash,
                    RefreshToken.purpose == TokenPurpose.SESSION,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
            )
            .scalars()
            .first()
        )

    def get(self, session_id: int) -> RefreshToken | None:
        """Row by primary key, regardless of owner or state."""
        return self.db.get(RefreshToken, session_id)

    def revoke(self, session_id: int, user_id: int) -> bool:
        """Revoke one of the user's sessions. False if it was not theirs or already revoked."""
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == session_id,
                RefreshToken.user_id == user_id,
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=self._now())
        )
        return result.rowcount > 0

    def revoke_by_token_hash(self, token_hash: str, user_id: int) -> bool:
        """Revoke the user's row holding this token hash."""
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.user_id == user_id,
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=self._now())
        )
        return result.rowcount > 0

    def revoke_all(self, user_id: int, except_token_hash: str | None = None, include_reset: bool = False) -> int:
        """Revoke every unrevoked row for the user. Returns the count."""
        stmt = update(RefreshToken).where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        if not include_reset:
            stmt = stmt.where(RefreshToken.purpose == TokenPurpose.SESSION)
        if except_token_hash:
            stmt = stmt.where(RefreshToken.token_hash != except_token_hash)
        result = self.db.execute(stmt.values(revoked_at=self._now()))
        return result.rowcount

    def list_active(self, user_id: int) -> list[RefreshToken]:
        stmt = self._live_sessions(user_id).order_by(RefreshToken.last_used_at.desc(), RefreshToken.id.desc())
        return list(self.db.execute(stmt).scalars())

    def purge_expired(self) -> int:
        """Hard-delete every row past its expiry, sessions and reset artifacts alike."""
        result = self.db.execute(
            delete(RefreshToken).where(RefreshToken.expires_at < self._now()).execution_options(synchronize_session=False)
        )
        return result.rowcount

    # Password-reset artifacts share the table but never count as sessions

    def create_reset_token(self, user_id: int, expires_at: datetime) -> str:
        token = generate_token(RESET_TOKEN_BYTES)
        now = self._now()
        self.db.add(
            RefreshToken(
                user_id=user_id,
                token_hash=hash_token(token),
                purpose=TokenPurpose.PASSWORD_RESET,
                expires_at=expires_at,
                created_at=now,
                last_used_at=now,
            )
        )
        self.db.flush()
        return token

    def find_live_reset_token(self, token: str) -> RefreshToken | None:
        now = self._now()
        return (
            self.db.execute(
                select(RefreshToken).where(
                    RefreshToken.token_hash == hash_token(token),
                    RefreshToken.purpose == TokenPurpose.PASSWORD_RESET,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
            )
            .scalars()
            .first()
        )

    def consume_reset_token(self, reset_id: int, user_id: int) -> bool:
        """Mark a reset artifact used. False if another request got there first."""
        result = self.db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == reset_id,
                RefreshToken.user_id == user_id,
                RefreshToken.purpose == TokenPurpose.PASSWORD_RESET,
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=self._now())
        )
        return result.rowcount > 0
