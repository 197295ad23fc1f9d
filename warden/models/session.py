"""Refresh token / session model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, String

from warden.database import Base
from warden.models.enums import TokenPurpose


class RefreshToken(Base):
    """A login session, or a password-reset artifact when purpose says so.

    Only the SHA-256 hash of the bearer token is stored. A row is live while
    revoked_at is NULL and expires_at lies in the future.
    """

    __tablename__ = "refresh_token"
    __table_args__ = (Index("ix_refresh_token_user_fingerprint", "user_id", "fingerprint"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    purpose = Column(
        Enum(TokenPurpose, native_enum=False, values_callable=lambda e: [m.value for m in e], length=16),
        nullable=False,
        default=TokenPurpose.SESSION,
    )
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked_at = Column(DateTime, nullable=True)
    device_info = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    browser = Column(String(64), nullable=True)
    fingerprint = Column(String(64), nullable=True)
    remember_me = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def is_live(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now
