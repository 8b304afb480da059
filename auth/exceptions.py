"""Typed exceptions for auth failures."""


class AuthError(Exception):
    """Base class for authentication/authorization errors."""


class ValidationError(AuthError):
    """Malformed or unacceptable input. Caller can fix it and retry."""


class PasswordPolicyError(ValidationError):
    """Password does not meet the strength policy."""

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__(violations[0] if violations else "Password does not meet policy")


class UnauthorizedError(AuthError):
    """
    Credentials or token rejected.

    Messages are deliberately generic - never reveal which check failed.
    """


class InvalidCredentialsError(UnauthorizedError):
    """Email/password combination rejected (unknown email or wrong password)."""


class InvalidTokenError(UnauthorizedError):
    """
    Token is invalid, expired, revoked, or already used.

    Used for access, refresh, single-use and MFA challenge tokens.
    """


class UserInactiveError(UnauthorizedError):
    """User account is deactivated. Login not permitted."""


class ConflictError(AuthError):
    """Resource already exists (duplicate registration)."""


class RateLimitedError(AuthError):
    """Too many attempts. Client should try again later."""

    def __init__(self, message: str = "Too many attempts. Please try again later."):
        super().__init__(message)


class UserNotFoundError(AuthError):
    """
    Email not associated with any user.

    Only surfaced by the verification-email flow. Login and password reset
    never reveal whether an email exists.
    """


class EmailAlreadyVerifiedError(AuthError):
    """Verification requested for an address that is already verified."""
