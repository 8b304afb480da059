"""Authentication configuration."""

import logging
import re

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhdw]?)$")

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}

DEFAULT_DURATION_SECONDS = 3600


def parse_duration_seconds(value: str | int) -> int:
    """Convert a duration like "15m" or "7d" to seconds.

    Bare integers are seconds. Unparseable input falls back to one hour
    so a typo in deployment config never prevents startup.
    """
    if isinstance(value, int):
        return value

    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        logger.warning(f"Unparseable duration {value!r}, using {DEFAULT_DURATION_SECONDS}s")
        return DEFAULT_DURATION_SECONDS

    amount = int(match.group(1))
    unit = match.group(2) or "s"
    return amount * _UNIT_SECONDS[unit]


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Token lifetimes use duration strings ("15m", "7d") to match deployment
    environment conventions. Rate limits and short-lived cache entries are
    plain seconds. Signing secrets are NOT part of this model - they come
    from Vault and are handed to TokenIssuer directly.
    """

    # Token lifetimes
    access_token_expiry: str = Field(
        default="15m",
        description="Access token lifetime",
    )
    refresh_token_expiry: str = Field(
        default="7d",
        description="Refresh token lifetime",
    )
    email_verification_expiry: str = Field(
        default="24h",
        description="Email verification link lifetime",
    )
    password_reset_expiry: str = Field(
        default="1h",
        description="Password reset link lifetime",
    )

    # Signing
    jwt_issuer: str = Field(default="enggamehub")
    jwt_audience: str = Field(default="enggamehub-users")
    jwt_algorithm: str = Field(default="HS256", pattern=r"^HS(256|384|512)$")

    # Password hashing
    bcrypt_rounds: int = Field(
        default=12,
        description="bcrypt cost factor",
        ge=4,
        le=31,
    )

    # Revocation
    mfa_challenge_ttl_seconds: int = Field(default=300, ge=30, le=3600)
    user_blacklist_ttl_seconds: int = Field(
        default=86400,
        description="How long a revoke-all blacklist marker lives",
        ge=60,
    )
    revoked_token_retention_days: int = Field(
        default=7,
        description="Revoked refresh token rows are swept after this many days",
        ge=0,
    )

    # Background worker
    notification_poll_interval_seconds: float = Field(
        default=5.0,
        description="Idle wait between notification queue polls",
        gt=0,
        le=300,
    )
    token_sweep_interval_seconds: int = Field(
        default=3600,
        description="How often the worker sweeps stale refresh token rows",
        ge=60,
    )

    # Rate limiting (fixed windows)
    login_rate_limit_attempts: int = Field(default=5, ge=1, le=100)
    login_rate_limit_window_seconds: int = Field(default=300, ge=1)
    verification_email_rate_limit_attempts: int = Field(default=3, ge=1, le=100)
    verification_email_rate_limit_window_seconds: int = Field(default=300, ge=1)
    password_reset_rate_limit_attempts: int = Field(default=3, ge=1, le=100)
    password_reset_rate_limit_window_seconds: int = Field(default=300, ge=1)
    mfa_rate_limit_attempts: int = Field(default=5, ge=1, le=100)
    mfa_rate_limit_window_seconds: int = Field(default=300, ge=1)

    # Application
    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL for verification and reset links",
    )
    app_name: str = Field(
        default="EngGameHub",
        description="Application name for emails and TOTP enrollment",
    )

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration_seconds(self.access_token_expiry)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration_seconds(self.refresh_token_expiry)

    @property
    def email_verification_ttl_seconds(self) -> int:
        return parse_duration_seconds(self.email_verification_expiry)

    @property
    def password_reset_ttl_seconds(self) -> int:
        return parse_duration_seconds(self.password_reset_expiry)
