"""Per-route request rate limiting (slowapi)."""

from fastapi import Request
from slowapi import Limiter

from warden.services.audit import client_ip


def _rate_limit_key(request: Request) -> str:
    return client_ip(request) or "unknown"


limiter = Limiter(key_func=_rate_limit_key)
