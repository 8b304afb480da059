"""Pydantic models for auth domain."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    """User roles. Permissions are derived from these in auth.permissions."""

    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class SingleUsePurpose(str, Enum):
    """Purposes a single-use token can be issued for."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class StrengthLabel(str, Enum):
    """Human-readable password strength buckets."""

    VERY_WEAK = "VeryWeak"
    WEAK = "Weak"
    MEDIUM = "Medium"
    STRONG = "Strong"
    VERY_STRONG = "VeryStrong"


DEFAULT_PREFERENCES: dict[str, Any] = {
    "language": "en",
    "theme": "light",
    "email_notifications": True,
    "push_notifications": True,
}


class User(BaseModel):
    """A registered user, including credential material. Never returned to clients."""

    id: UUID
    email: EmailStr
    password_hash: str
    nickname: str | None = None
    roles: list[Role] = Field(default_factory=lambda: [Role.STUDENT])
    email_verified: bool = False
    email_verified_at: datetime | None = None
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    is_active: bool = True
    preferences: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_PREFERENCES))
    created_at: datetime
    last_login_at: datetime | None = None
    last_activity_at: datetime | None = None

    model_config = {"from_attributes": True}

    def to_public(self) -> "PublicUser":
        """Strip password hash and MFA secret."""
        return PublicUser.model_validate(
            self.model_dump(exclude={"password_hash", "mfa_secret"})
        )


class PublicUser(BaseModel):
    """User as exposed to API callers."""

    id: UUID
    email: EmailStr
    nickname: str | None = None
    roles: list[Role]
    email_verified: bool
    email_verified_at: datetime | None = None
    mfa_enabled: bool
    is_active: bool
    preferences: dict[str, Any]
    created_at: datetime
    last_login_at: datetime | None = None
    last_activity_at: datetime | None = None


class RefreshTokenRecord(BaseModel):
    """Durable refresh token row. Only mutation after insert is revoked=True."""

    id: UUID = Field(..., description="Equals the token's jti claim")
    user_id: UUID
    token: str
    expires_at: datetime
    revoked: bool  # Required - fail closed, no default
    created_at: datetime


class TokenPair(BaseModel):
    """Access + refresh tokens handed to a client."""

    access_token: str
    refresh_token: str
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    token_type: str = "Bearer"


class AccessTokenClaims(BaseModel):
    """Verified access token payload."""

    user_id: UUID
    email: str
    roles: list[str]
    permissions: list[str]
    jti: str
    issued_at: datetime
    expires_at: datetime


class RefreshClaims(BaseModel):
    """Verified refresh token payload."""

    user_id: UUID
    jti: str


class SingleUseClaims(BaseModel):
    """Verified and consumed single-use token payload."""

    user_id: UUID
    email: str
    purpose: SingleUsePurpose


class ClientInfo(BaseModel):
    """Request origin, recorded in audit events and used for rate limiting."""

    ip_address: str | None = None
    user_agent: str | None = None


class AuthResult(BaseModel):
    """Result of register/login/MFA login."""

    user: PublicUser | None = None
    tokens: TokenPair | None = None
    requires_mfa: bool = False
    mfa_token: str | None = None


class MfaEnrollment(BaseModel):
    """Secret and provisioning URI returned when MFA enrollment begins."""

    secret: str
    provisioning_uri: str


# Request bodies


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)
    nickname: str | None = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=1024)


class MfaLoginRequest(BaseModel):
    mfa_token: str
    code: str = Field(..., min_length=6, max_length=8)


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str | None = None


class EmailRequest(BaseModel):
    email: EmailStr


class TokenRequest(BaseModel):
    token: str


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(..., min_length=1, max_length=1024)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)


class MfaDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class PasswordRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class PasswordStrength(BaseModel):
    """Informational strength report. Not the enforced policy."""

    score: int
    label: StrengthLabel
    violations: list[str]
