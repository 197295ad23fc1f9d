"""Typed auth outcomes and their HTTP rendering."""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class AuthError(Exception):
    """Base class for every caller-visible auth failure."""

    status_code = 400
    default_code = "AUTH_ERROR"

    def __init__(self, message: str, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details


class BadRequestError(AuthError):
    """Caller-fixable input problem; safe to detail."""

    status_code = 400
    default_code = "BAD_REQUEST"


class UnauthorizedError(AuthError):
    """Bad credentials or an invalid token. Message stays uniform."""

    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(AuthError):
    """A known, named account state such as an MFA lockout."""

    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(AuthError):
    """The resource does not exist for this caller."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AuthError):
    """The request clashes with current state, e.g. a taken email."""

    status_code = 409
    default_code = "CONFLICT"


class EmailDeliveryError(Exception):
    """Raised by an email sender when the provider rejects or cannot be reached."""


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError as {"detail", "code", **details}."""
    content: dict[str, Any] = {"detail": exc.message, "code": exc.code}
    content.update(exc.details)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


def register_exception_handlers(app: FastAPI) -> None:
    """Install the AuthError handler on the app."""
    app.add_exception_handler(AuthError, auth_error_handler)  # type: ignore[arg-type]
