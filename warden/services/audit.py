"""Audit sink and request client metadata."""

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.models.audit_log import AuditLog
from warden.models.enums import AuditAction, AuditLevel

logger = logging.getLogger("warden")


@dataclass(frozen=True)
class ClientContext:
    """Who is calling: source address and user agent, either may be unknown."""

    ip: str | None = None
    user_agent: str | None = None

    @property
    def throttle_key(self) -> str:
        return self.ip or "unknown"


def client_ip(request: Request) -> str | None:
    """Client IP from the proxy header, falling back to the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return None


def client_context(request: Request) -> ClientContext:
    return ClientContext(ip=client_ip(request), user_agent=request.headers.get("user-agent"))


class AuditService:
    """Append-only audit trail. A failed write is logged and dropped."""

    def __init__(self, db: Session, enabled: bool = True) -> None:
        self.db = db
        self.enabled = enabled

    def log(
        self,
        action: AuditAction,
        user_id: int | None = None,
        resource: str | None = None,
        resource_id: int | None = None,
        details: dict[str, Any] | None = None,
        client: ClientContext | None = None,
        level: AuditLevel = AuditLevel.INFO,
    ) -> None:
        if not self.enabled:
            return
        client = client or ClientContext()
        entry = AuditLog(
            action=str(action),
            level=str(level),
            user_id=user_id,
            resource=resource,
            resource_id=resource_id,
            details=details,
            ip_address=client.ip,
            user_agent=client.user_agent[:512] if client.user_agent else None,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Failed to write audit entry %s for user %s", action, user_id, exc_info=True)


def get_audit_service(db: Session) -> AuditService:
    return AuditService(db, enabled=get_settings().AUDIT_LOG_ENABLED)
