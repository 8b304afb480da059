"""Global exception handlers for FastAPI."""

import logging

import psycopg2
import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from auth.exceptions import (
    AuthError,
    ConflictError,
    EmailAlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    PasswordPolicyError,
    RateLimitedError,
    UnauthorizedError,
    UserInactiveError,
    UserNotFoundError,
    ValidationError,
)
from clients.email_client import EmailGatewayError

logger = logging.getLogger(__name__)

# Most specific class first; the first isinstance match wins
AUTH_ERROR_MAP: list[tuple[type[AuthError], int, str]] = [
    (PasswordPolicyError, 400, ErrorCodes.WEAK_PASSWORD),
    (ValidationError, 400, ErrorCodes.VALIDATION_ERROR),
    (InvalidCredentialsError, 401, ErrorCodes.INVALID_CREDENTIALS),
    (InvalidTokenError, 401, ErrorCodes.INVALID_TOKEN),
    (UserInactiveError, 403, ErrorCodes.ACCOUNT_INACTIVE),
    (UnauthorizedError, 401, ErrorCodes.NOT_AUTHENTICATED),
    (ConflictError, 409, ErrorCodes.ALREADY_EXISTS),
    (RateLimitedError, 429, ErrorCodes.RATE_LIMITED),
    (UserNotFoundError, 400, ErrorCodes.NOT_FOUND),
    (EmailAlreadyVerifiedError, 400, ErrorCodes.ALREADY_VERIFIED),
]

INFRASTRUCTURE_ERRORS = (redis.RedisError, psycopg2.Error, EmailGatewayError)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def auth_error_status(exc: AuthError) -> tuple[int, str]:
    """HTTP status and error code for an auth failure."""
    for error_type, status_code, code in AUTH_ERROR_MAP:
        if isinstance(exc, error_type):
            return status_code, code
    return 400, ErrorCodes.INVALID_REQUEST


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        status_code, code = auth_error_status(exc)
        details = exc.violations if isinstance(exc, PasswordPolicyError) else None
        return JSONResponse(
            status_code=status_code,
            content=error_response(
                code, str(exc), details=details, request_id=_request_id(request)
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_response(
                ErrorCodes.VALIDATION_ERROR,
                "Request body is invalid",
                details=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()],
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    async def infrastructure_error_handler(request: Request, exc: Exception):
        logger.error(f"Infrastructure failure: {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=503,
            content=error_response(
                ErrorCodes.SERVICE_UNAVAILABLE,
                "Service temporarily unavailable",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )

    for error_type in INFRASTRUCTURE_ERRORS:
        app.add_exception_handler(error_type, infrastructure_error_handler)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_ERROR,
                "An internal error occurred",
                request_id=_request_id(request),
            ).model_dump(mode="json"),
        )
