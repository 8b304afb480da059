"""Security middleware for FastAPI - bearer token validation and user context."""

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from auth.tokens import TokenIssuer
from api.base import error_response, ErrorCodes
from utils.user_context import set_current_user_id, clear_current_user_id


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that validates the access token and sets user context.

    For protected routes:
    1. Extracts the access token from the 'Authorization: Bearer' header
    2. Verifies it via TokenIssuer (signature, grant, revocation, blacklist)
    3. Sets user_id and claims in request.state and the user context
    4. Clears context after request completes

    Public paths bypass authentication entirely.
    """

    PUBLIC_PATHS = [
        "/auth/register",
        "/auth/login",
        "/auth/refresh",
        "/auth/verification-email",
        "/auth/password-reset-email",
        "/auth/verify-email",
        "/auth/reset-password",
        "/auth/password-policy",
        "/auth/password-strength",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, token_issuer: TokenIssuer):
        super().__init__(app)
        self._token_issuer = token_issuer

    def _is_public_path(self, path: str) -> bool:
        """Exact match, or a sub-path of a public path (/auth/login/mfa)."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path + "/"):
                return True
        return False

    @staticmethod
    def _bearer_token(request: Request) -> str | None:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _unauthorized(self, request: Request, code: str, message: str) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
            content=error_response(
                code, message, request_id=getattr(request.state, "request_id", None)
            ).model_dump(mode="json"),
        )

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        if self._is_public_path(request.url.path):
            return await call_next(request)

        token = self._bearer_token(request)
        if token is None:
            return self._unauthorized(request, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

        # None covers bad signature, expiry, revocation and an unreachable cache
        claims = await run_in_threadpool(self._token_issuer.verify_access, token)
        if claims is None:
            return self._unauthorized(request, ErrorCodes.INVALID_TOKEN, "Invalid or expired token")

        set_current_user_id(claims.user_id)
        request.state.user_id = claims.user_id
        request.state.claims = claims

        try:
            response = await call_next(request)
            return response
        finally:
            # Always clear context
            clear_current_user_id()
