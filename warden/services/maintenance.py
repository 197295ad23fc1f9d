"""Background cleanup of expired throttle state and sessions.

Two interval jobs on an APScheduler ``BackgroundScheduler``: in-memory
throttle/MFA state every ``THROTTLE_CLEANUP_INTERVAL`` seconds and expired
refresh tokens every ``TOKEN_CLEANUP_INTERVAL`` seconds.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warden.config import get_settings
from warden.database import SessionLocal, transaction
from warden.services.login_throttle import get_login_throttle
from warden.services.mfa import get_mfa_attempt_tracker, get_used_temp_tokens
from warden.services.session_store import SessionStore

logger = logging.getLogger("warden")

# Overridable in tests; defaults to SessionLocal
_session_factory: Callable[[], Session] | None = None

_scheduler: BackgroundScheduler | None = None


def purge_memory_state() -> int:
    """Drop expired throttle records, CAPTCHAs, MFA lockouts and redeemed temp tokens."""
    now = datetime.utcnow()
    attempts, captchas = get_login_throttle().cleanup()
    mfa = get_mfa_attempt_tracker().cleanup(now) + get_used_temp_tokens().cleanup(now)
    return attempts + captchas + mfa


def purge_expired_sessions() -> int:
    """Hard-delete expired refresh tokens and reset artifacts."""
    factory = _session_factory or SessionLocal
    db = factory()
    try:
        with transaction(db):
            count = SessionStore(db).purge_expired()
    except SQLAlchemyError:
        logger.error("Session cleanup failed", exc_info=True)
        return 0
    finally:
        db.close()
    if count:
        logger.info("Cleaned up %d expired refresh tokens", count)
    return count


def start_maintenance() -> BackgroundScheduler:
    """Start the cleanup scheduler."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler

    settings = get_settings()
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        purge_memory_state, "interval", seconds=settings.THROTTLE_CLEANUP_INTERVAL, id="purge_memory_state"
    )
    _scheduler.add_job(
        purge_expired_sessions, "interval", seconds=settings.TOKEN_CLEANUP_INTERVAL, id="purge_expired_sessions"
    )
    _scheduler.start()
    logger.info(
        "Maintenance started (throttle every %ds, tokens every %ds)",
        settings.THROTTLE_CLEANUP_INTERVAL,
        settings.TOKEN_CLEANUP_INTERVAL,
    )
    return _scheduler


def stop_maintenance() -> None:
    """Stop the cleanup scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Maintenance stopped")
