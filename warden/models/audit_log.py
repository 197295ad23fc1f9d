"""Audit log model."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from warden.database import Base


class AuditLog(Base):
    """Append-only record of an auth state transition."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False, index=True)
    level = Column(String(16), nullable=False, default="info")
    user_id = Column(Integer, nullable=True, index=True)
    resource = Column(String(64), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
