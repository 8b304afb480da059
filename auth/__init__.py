"""Authentication and authorization modules."""

from auth.exceptions import (
    AuthError,
    ValidationError,
    PasswordPolicyError,
    UnauthorizedError,
    InvalidCredentialsError,
    InvalidTokenError,
    UserInactiveError,
    ConflictError,
    RateLimitedError,
    UserNotFoundError,
    EmailAlreadyVerifiedError,
)
from auth.types import (
    User,
    PublicUser,
    Role,
    TokenPair,
    AccessTokenClaims,
    RefreshClaims,
    SingleUseClaims,
    SingleUsePurpose,
    ClientInfo,
    AuthResult,
)
from auth.config import AuthConfig, parse_duration_seconds
from auth.database import AuthDatabase
from auth.password import PasswordPolicy, CredentialHasher
from auth.permissions import permissions_for_roles
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.tokens import TokenIssuer
from auth.mfa import MfaChallenge, TotpCodeVerifier
from auth.notifications import NotificationSink, NotificationWorker
from auth.service import AuthService
from auth.security_middleware import AuthMiddleware
from auth.api import create_auth_router
