"""HTTP routes for authentication.

Routes translate HTTP to AuthService calls and nothing more. AuthError
and infrastructure exceptions propagate to the handlers registered by
api.errors.register_error_handlers.
"""

import ipaddress
from uuid import UUID

from fastapi import APIRouter, Request

from api.base import success_response
from auth.exceptions import UnauthorizedError
from auth.password import PasswordPolicy
from auth.service import AuthService
from auth.types import (
    ChangePasswordRequest,
    ClientInfo,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaLoginRequest,
    PasswordRequest,
    PasswordStrength,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
)


def _get_client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=_get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _require_user_id(request: Request) -> UUID:
    """User id set by AuthMiddleware for protected routes."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise UnauthorizedError("Authentication required")
    return user_id


def create_auth_router(auth_service: AuthService) -> APIRouter:
    """Create auth router with injected service."""
    router = APIRouter(tags=["auth"])

    # Public

    @router.post("/register")
    def register(request: Request, body: RegisterRequest):
        result = auth_service.register(
            email=body.email,
            password=body.password,
            nickname=body.nickname,
            client=_client_info(request),
        )
        return success_response(result.model_dump(mode="json"), _request_id(request))

    @router.post("/login")
    def login(request: Request, body: LoginRequest):
        """Password login. May answer requires_mfa=True with an mfa_token instead of tokens."""
        result = auth_service.login(
            email=body.email,
            password=body.password,
            client=_client_info(request),
        )
        return success_response(result.model_dump(mode="json"), _request_id(request))

    @router.post("/login/mfa")
    def login_mfa(request: Request, body: MfaLoginRequest):
        result = auth_service.verify_mfa_and_login(
            mfa_token=body.mfa_token,
            code=body.code,
            client=_client_info(request),
        )
        return success_response(result.model_dump(mode="json"), _request_id(request))

    @router.post("/refresh")
    def refresh(request: Request, body: RefreshRequest):
        tokens = auth_service.refresh_tokens(body.refresh_token, client=_client_info(request))
        return success_response(tokens.model_dump(mode="json"), _request_id(request))

    @router.post("/verification-email")
    def send_verification_email(request: Request, body: EmailRequest):
        auth_service.send_verification_email(body.email, client=_client_info(request))
        return success_response({"message": "Verification email sent"}, _request_id(request))

    @router.post("/password-reset-email")
    def send_password_reset_email(request: Request, body: EmailRequest):
        """Always the same answer, whether or not the email is registered."""
        auth_service.send_password_reset_email(body.email, client=_client_info(request))
        return success_response(
            {"message": "If the email is registered, a reset link has been sent"},
            _request_id(request),
        )

    @router.post("/verify-email")
    def verify_email(request: Request, body: TokenRequest):
        auth_service.verify_email(body.token, client=_client_info(request))
        return success_response({"message": "Email verified"}, _request_id(request))

    @router.post("/reset-password")
    def reset_password(request: Request, body: ResetPasswordRequest):
        auth_service.reset_password(body.token, body.new_password, client=_client_info(request))
        return success_response(
            {"message": "Password reset. Please log in again."}, _request_id(request)
        )

    @router.get("/password-policy")
    def password_policy(request: Request):
        return success_response(PasswordPolicy.describe_policy(), _request_id(request))

    @router.post("/password-strength")
    def password_strength(request: Request, body: PasswordRequest):
        score = PasswordPolicy.score(body.password)
        strength = PasswordStrength(
            score=score,
            label=PasswordPolicy.describe(score),
            violations=PasswordPolicy.check(body.password),
        )
        return success_response(strength.model_dump(mode="json"), _request_id(request))

    # Authenticated (AuthMiddleware sets request.state.user_id)

    @router.get("/me")
    def get_current_user(request: Request):
        user = auth_service.get_user(_require_user_id(request))
        return success_response(user.model_dump(mode="json"), _request_id(request))

    @router.post("/logout")
    def logout(request: Request, body: LogoutRequest | None = None):
        """Log out on every device."""
        auth_service.logout(
            _require_user_id(request),
            refresh_token=body.refresh_token if body else None,
            client=_client_info(request),
        )
        return success_response({"message": "Logged out successfully"}, _request_id(request))

    @router.post("/change-password")
    def change_password(request: Request, body: ChangePasswordRequest):
        """Changes the password and ends every session, including this one."""
        auth_service.change_password(
            _require_user_id(request),
            body.old_password,
            body.new_password,
            client=_client_info(request),
        )
        return success_response(
            {"message": "Password changed. Please log in again."}, _request_id(request)
        )

    @router.post("/mfa/enroll")
    def begin_mfa_enrollment(request: Request):
        enrollment = auth_service.begin_mfa_enrollment(_require_user_id(request))
        return success_response(enrollment.model_dump(mode="json"), _request_id(request))

    @router.post("/mfa/confirm")
    def confirm_mfa_enrollment(request: Request, body: MfaCodeRequest):
        auth_service.confirm_mfa_enrollment(
            _require_user_id(request), body.code, client=_client_info(request)
        )
        return success_response({"mfa_enabled": True}, _request_id(request))

    @router.post("/mfa/disable")
    def disable_mfa(request: Request, body: MfaDisableRequest):
        auth_service.disable_mfa(
            _require_user_id(request), body.password, client=_client_info(request)
        )
        return success_response({"mfa_enabled": False}, _request_id(request))

    return router
