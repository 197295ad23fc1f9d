"""Signed compact token codec.

Tokens are three dot-joined base64url segments (header, payload, HMAC-SHA256
signature over ``header.payload``). Decoding never raises: callers get a
``DecodeResult`` that either carries the claims or names why it failed.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from jose import jws, jwt
from jose.exceptions import JOSEError
from jose.utils import base64url_decode

from warden.config import get_settings

ACCESS_PURPOSE = "access"
MFA_TEMP_PURPOSE = "mfa_temp"
MFA_TEMP_PREFIX = "mfa_"


class DecodeFailure(StrEnum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding a token: claims, or the reason there are none."""

    claims: dict[str, Any] | None = None
    failure: DecodeFailure | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


def _b64_json(segment: str) -> Any:
    return json.loads(base64url_decode(segment.encode("ascii")))


def encode_token(
    claims: dict[str, Any],
    secret: str,
    ttl_seconds: int,
    algorithm: str = "HS256",
    now: Callable[[], float] = time.time,
) -> str:
    """Sign ``claims`` with ``iat``/``exp`` stamped from ``ttl_seconds``."""
    issued_at = int(now())
    payload = dict(claims)
    payload["iat"] = issued_at
    payload["exp"] = issued_at + ttl_seconds
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_token(
    token: str,
    secret: str,
    algorithm: str = "HS256",
    now: Callable[[], float] = time.time,
) -> DecodeResult:
    """Verify and decode a token produced by ``encode_token``."""
    if not isinstance(token, str):
        return DecodeResult(failure=DecodeFailure.MALFORMED)
    parts = token.split(".")
    if len(parts) != 3:
        return DecodeResult(failure=DecodeFailure.MALFORMED)

    try:
        header = _b64_json(parts[0])
        _b64_json(parts[1])
    except (ValueError, UnicodeError, TypeError):
        return DecodeResult(failure=DecodeFailure.MALFORMED)
    if not isinstance(header, dict):
        return DecodeResult(failure=DecodeFailure.MALFORMED)

    try:
        payload_bytes = jws.verify(token, secret, algorithms=[algorithm])
    except JOSEError:
        return DecodeResult(failure=DecodeFailure.BAD_SIGNATURE)

    try:
        claims = json.loads(payload_bytes)
    except ValueError:
        return DecodeResult(failure=DecodeFailure.MALFORMED)
    if not isinstance(claims, dict):
        return DecodeResult(failure=DecodeFailure.MALFORMED)

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return DecodeResult(failure=DecodeFailure.MALFORMED)
    if exp < int(now()):
        return DecodeResult(failure=DecodeFailure.EXPIRED)

    return DecodeResult(claims=claims)


class TokenCodec:
    """Codec bound to one signing secret."""

    def __init__(self, secret: str, algorithm: str = "HS256", now: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("Token signing secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self._now = now

    def encode(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        return encode_token(claims, self._secret, ttl_seconds, self.algorithm, self._now)

    def decode(self, token: str) -> DecodeResult:
        return decode_token(token, self._secret, self.algorithm, self._now)


class JWTService:
    """Issues and reads short-lived access tokens."""

    def __init__(self, codec: TokenCodec | None = None, ttl_seconds: int | None = None) -> None:
        settings = get_settings()
        self.codec = codec or TokenCodec(settings.JWT_SECRET_KEY, settings.JWT_ALGORITHM)
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.access_token_ttl

    def create_token(self, user_id: int, email: str) -> str:
        """Create an access token for the given user."""
        return self.codec.encode({"sub": str(user_id), "email": email, "purpose": ACCESS_PURPOSE}, self.ttl_seconds)

    def decode_token(self, token: str) -> dict[str, Any] | None:
        """Decode an access token. Returns None if invalid for any reason."""
        result = self.codec.decode(token)
        if not result.ok or result.claims.get("purpose") != ACCESS_PURPOSE:  # type: ignore[union-attr]
            return None
        return result.claims


_jwt_service: JWTService | None = None


def get_jwt_service() -> JWTService:
    """Get singleton JWT service instance."""
    global _jwt_service
    if _jwt_service is None:
        _jwt_service = JWTService()
    return _jwt_service
