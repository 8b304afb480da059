"""Authentication service - orchestrates credential, token and MFA flows."""

import logging
from uuid import UUID

import redis

from auth.config import AuthConfig
from auth.database import AuthDatabase, normalize_email
from auth.exceptions import (
    ConflictError,
    EmailAlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    RateLimitedError,
    UserInactiveError,
    UserNotFoundError,
    ValidationError,
)
from auth.mfa import MfaChallenge, TotpCodeVerifier
from auth.notifications import NotificationSink, NotificationTemplate
from auth.password import CredentialHasher, PasswordPolicy
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.tokens import TokenIssuer
from auth.types import (
    DEFAULT_PREFERENCES,
    AuthResult,
    ClientInfo,
    MfaEnrollment,
    PublicUser,
    Role,
    SingleUsePurpose,
    TokenPair,
    User,
)
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)

# Cache entries other services keep per user; dropped on logout
USER_CACHE_PREFIXES = ("user:", "user_progress:", "user_preferences:")

_INVALID_CREDENTIALS = "Invalid email or password"


class AuthService:
    """Orchestrates authentication use cases.

    Handles:
    - Registration and login (with optional MFA step)
    - Refresh token rotation and logout
    - Email verification and password reset via single-use tokens
    - Password change and MFA enrollment

    Every failure a client can cause raises an AuthError subclass.
    Infrastructure errors (redis.RedisError, psycopg2.Error) propagate
    unchanged so they are never mistaken for bad credentials.
    """

    LOGIN_ACTION = "login"
    VERIFICATION_EMAIL_ACTION = "verification_email"
    PASSWORD_RESET_ACTION = "password_reset"
    MFA_ACTION = "mfa"

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        token_issuer: TokenIssuer,
        mfa_challenge: MfaChallenge,
        rate_limiter: RateLimiter,
        hasher: CredentialHasher,
        security_logger: SecurityLogger,
        notifications: NotificationSink,
        valkey: ValkeyClient,
    ):
        self._config = config
        self._auth_db = auth_db
        self._token_issuer = token_issuer
        self._mfa = mfa_challenge
        self._rate_limiter = rate_limiter
        self._hasher = hasher
        self._security_logger = security_logger
        self._notifications = notifications
        self._valkey = valkey

    def _audit(
        self,
        event: SecurityEvent,
        client: ClientInfo | None,
        user_id: UUID | None = None,
        email: str | None = None,
        details: dict | None = None,
    ) -> None:
        client = client or ClientInfo()
        self._security_logger.log(
            event,
            user_id=user_id,
            email=email,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            details=details,
        )

    def _active_user(self, user_id: UUID) -> User:
        """Load user behind a verified token.

        Raises:
            InvalidTokenError: If the user is gone or deactivated.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("Invalid or expired token")
        return user

    def _complete_login(self, user: User, client: ClientInfo | None, event: SecurityEvent) -> AuthResult:
        tokens = self._token_issuer.issue_pair(user)
        self._auth_db.update_login_info(user.id)
        self._audit(event, client, user_id=user.id, email=user.email)

        # Re-read to pick up last_login_at
        refreshed = self._auth_db.get_user_by_id(user.id) or user
        return AuthResult(user=refreshed.to_public(), tokens=tokens)

    def _clear_user_cache(self, user_id: UUID) -> None:
        self._valkey.delete(*(f"{prefix}{user_id}" for prefix in USER_CACHE_PREFIXES))

    # Registration and login

    def register(
        self,
        email: str,
        password: str,
        nickname: str | None = None,
        client: ClientInfo | None = None,
    ) -> AuthResult:
        """Create account, issue a session and queue the verification email.

        Raises:
            ConflictError: If the email is already registered.
            PasswordPolicyError: If the password is too weak.
        """
        email = normalize_email(email)

        if self._auth_db.get_user_by_email(email) is not None:
            raise ConflictError("User with this email already exists")

        PasswordPolicy.validate(password)
        password_hash = self._hasher.hash(password)

        user = self._auth_db.create_user(
            email=email,
            password_hash=password_hash,
            nickname=nickname,
            roles=[Role.STUDENT],
            preferences=dict(DEFAULT_PREFERENCES),
        )

        tokens = self._token_issuer.issue_pair(user)

        # The account already exists; a lost email can be re-requested
        try:
            token = self._token_issuer.issue_single_use(
                SingleUsePurpose.EMAIL_VERIFICATION, user.id, user.email
            )
            self._notifications.enqueue(
                NotificationTemplate.EMAIL_VERIFICATION, user.id, user.email, user.nickname, token
            )
        except redis.RedisError:
            logger.exception(f"Could not queue verification email for new user {user.id}")

        self._audit(SecurityEvent.USER_REGISTERED, client, user_id=user.id, email=user.email)
        logger.info(f"Registered user {user.id}")

        return AuthResult(user=user.to_public(), tokens=tokens)

    def login(self, email: str, password: str, client: ClientInfo | None = None) -> AuthResult:
        """Password login.

        Returns tokens, or requires_mfa=True with an mfa_token when the
        account has MFA enabled.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password.
            RateLimitedError: Too many attempts for this user from this IP.
            UserInactiveError: Account is deactivated.
        """
        client = client or ClientInfo()
        user = self._auth_db.get_user_by_email(email)
        if user is None:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        rate_subject = f"{user.id}:{client.ip_address or 'unknown'}"
        if not self._rate_limiter.check(
            self.LOGIN_ACTION,
            rate_subject,
            self._config.login_rate_limit_attempts,
            self._config.login_rate_limit_window_seconds,
        ):
            self._audit(
                SecurityEvent.RATE_LIMITED, client, user_id=user.id, email=user.email,
                details={"action": self.LOGIN_ACTION},
            )
            raise RateLimitedError()

        if not self._hasher.verify(password, user.password_hash):
            self._audit(
                SecurityEvent.LOGIN_FAILED, client, user_id=user.id, email=user.email,
                details={"reason": "invalid_password"},
            )
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if not user.is_active:
            self._audit(SecurityEvent.LOGIN_BLOCKED_INACTIVE, client, user_id=user.id, email=user.email)
            raise UserInactiveError("User account is deactivated")

        self._rate_limiter.reset(
            self.LOGIN_ACTION, rate_subject, self._config.login_rate_limit_window_seconds
        )

        if self._hasher.needs_rehash(user.password_hash):
            self._auth_db.update_password_hash(user.id, self._hasher.hash(password))
            logger.info(f"Upgraded password hash cost for user {user.id}")

        if user.mfa_enabled:
            mfa_token = self._mfa.issue(user.id)
            self._audit(SecurityEvent.MFA_REQUIRED, client, user_id=user.id, email=user.email)
            return AuthResult(requires_mfa=True, mfa_token=mfa_token)

        return self._complete_login(user, client, SecurityEvent.LOGIN_SUCCESS)

    def verify_mfa_and_login(
        self,
        mfa_token: str,
        code: str,
        client: ClientInfo | None = None,
    ) -> AuthResult:
        """Second login step for MFA-enabled accounts.

        A wrong code leaves the challenge in place so the user can retry
        until it expires or the MFA rate limit trips.

        Raises:
            InvalidTokenError: Challenge unknown, expired or already used.
            InvalidCredentialsError: Wrong code.
            RateLimitedError: Too many code attempts.
        """
        user_id = self._mfa.verify(mfa_token)
        if user_id is None:
            raise InvalidTokenError("Invalid or expired MFA token")

        if not self._rate_limiter.check(
            self.MFA_ACTION,
            str(user_id),
            self._config.mfa_rate_limit_attempts,
            self._config.mfa_rate_limit_window_seconds,
        ):
            self._audit(
                SecurityEvent.RATE_LIMITED, client, user_id=user_id,
                details={"action": self.MFA_ACTION},
            )
            raise RateLimitedError()

        user = self._auth_db.get_user_by_id(user_id)
        if user is None or not user.is_active:
            self._mfa.consume(mfa_token)
            raise InvalidTokenError("Invalid or expired MFA token")

        if not self._mfa.verify_code(user_id, code):
            self._audit(SecurityEvent.MFA_FAILED, client, user_id=user.id, email=user.email)
            raise InvalidCredentialsError("Invalid MFA code")

        # Two concurrent correct submissions: only the one that deletes the challenge wins
        if not self._mfa.consume(mfa_token):
            raise InvalidTokenError("Invalid or expired MFA token")

        self._rate_limiter.reset(
            self.MFA_ACTION, str(user_id), self._config.mfa_rate_limit_window_seconds
        )
        return self._complete_login(user, client, SecurityEvent.MFA_LOGIN_SUCCESS)

    # Session lifecycle

    def refresh_tokens(self, refresh_token: str, client: ClientInfo | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair. The presented token is revoked.

        Raises:
            InvalidTokenError: Token invalid, expired, revoked or already used,
                or the user is no longer active.
        """
        claims = self._token_issuer.verify_refresh(refresh_token)
        if claims is None:
            raise InvalidTokenError("Invalid or expired refresh token")

        user = self._active_user(claims.user_id)

        # Conditional revoke: a concurrent refresh with the same token loses here
        if not self._token_issuer.revoke(refresh_token):
            raise InvalidTokenError("Invalid or expired refresh token")

        tokens = self._token_issuer.issue_pair(user)
        self._audit(
            SecurityEvent.TOKEN_REFRESH, client, user_id=user.id, email=user.email,
            details={"rotated": claims.jti},
        )
        return tokens

    def logout(
        self,
        user_id: UUID,
        refresh_token: str | None = None,
        client: ClientInfo | None = None,
    ) -> None:
        """Log out everywhere: revoke all refresh tokens and blacklist access tokens."""
        if refresh_token:
            self._token_issuer.revoke(refresh_token)

        revoked = self._token_issuer.revoke_all(user_id)
        self._clear_user_cache(user_id)

        self._audit(SecurityEvent.LOGOUT, client, user_id=user_id, details={"revoked_sessions": revoked})

    # Email verification and password reset

    def send_verification_email(self, email: str, client: ClientInfo | None = None) -> None:
        """Queue a fresh verification email. Any earlier link stops working.

        Raises:
            RateLimitedError: Too many requests for this email.
            UserNotFoundError: No account with this email.
            EmailAlreadyVerifiedError: Nothing to verify.
        """
        email = normalize_email(email)

        if not self._rate_limiter.check(
            self.VERIFICATION_EMAIL_ACTION,
            email,
            self._config.verification_email_rate_limit_attempts,
            self._config.verification_email_rate_limit_window_seconds,
        ):
            self._audit(
                SecurityEvent.RATE_LIMITED, client, email=email,
                details={"action": self.VERIFICATION_EMAIL_ACTION},
            )
            raise RateLimitedError()

        user = self._auth_db.get_user_by_email(email)
        if user is None:
            raise UserNotFoundError("User not found")
        if user.email_verified:
            raise EmailAlreadyVerifiedError("Email is already verified")

        token = self._token_issuer.issue_single_use(
            SingleUsePurpose.EMAIL_VERIFICATION, user.id, user.email
        )
        self._notifications.enqueue(
            NotificationTemplate.EMAIL_VERIFICATION, user.id, user.email, user.nickname, token
        )
        self._audit(SecurityEvent.VERIFICATION_EMAIL_SENT, client, user_id=user.id, email=user.email)

    def send_password_reset_email(self, email: str, client: ClientInfo | None = None) -> None:
        """Queue a password reset email.

        Returns silently when no active account matches, so callers cannot
        probe which emails are registered.

        Raises:
            RateLimitedError: Too many requests for this email.
        """
        email = normalize_email(email)

        if not self._rate_limiter.check(
            self.PASSWORD_RESET_ACTION,
            email,
            self._config.password_reset_rate_limit_attempts,
            self._config.password_reset_rate_limit_window_seconds,
        ):
            self._audit(
                SecurityEvent.RATE_LIMITED, client, email=email,
                details={"action": self.PASSWORD_RESET_ACTION},
            )
            raise RateLimitedError()

        user = self._auth_db.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return

        token = self._token_issuer.issue_single_use(
            SingleUsePurpose.PASSWORD_RESET, user.id, user.email
        )
        self._notifications.enqueue(
            NotificationTemplate.PASSWORD_RESET, user.id, user.email, user.nickname, token
        )
        self._audit(SecurityEvent.PASSWORD_RESET_REQUESTED, client, user_id=user.id, email=user.email)

    def verify_email(self, token: str, client: ClientInfo | None = None) -> None:
        """Consume a verification token and mark the email verified.

        Raises:
            InvalidTokenError: Token invalid, expired, superseded or already used.
        """
        claims = self._token_issuer.verify_single_use(SingleUsePurpose.EMAIL_VERIFICATION, token)
        if claims is None:
            raise InvalidTokenError("Invalid or expired verification token")

        if not self._auth_db.mark_email_verified(claims.user_id):
            raise InvalidTokenError("Invalid or expired verification token")

        self._audit(SecurityEvent.EMAIL_VERIFIED, client, user_id=claims.user_id, email=claims.email)

    def reset_password(self, token: str, new_password: str, client: ClientInfo | None = None) -> None:
        """Set a new password from a reset link and revoke every session.

        The password is checked before the token is consumed, so a weak
        password does not burn the link.

        Raises:
            PasswordPolicyError: New password too weak.
            InvalidTokenError: Token invalid, expired, superseded or already used.
        """
        PasswordPolicy.validate(new_password)

        claims = self._token_issuer.verify_single_use(SingleUsePurpose.PASSWORD_RESET, token)
        if claims is None:
            raise InvalidTokenError("Invalid or expired reset token")

        if not self._auth_db.update_password_hash(claims.user_id, self._hasher.hash(new_password)):
            raise InvalidTokenError("Invalid or expired reset token")

        revoked = self._token_issuer.revoke_all(claims.user_id)
        self._audit(
            SecurityEvent.PASSWORD_RESET, client, user_id=claims.user_id, email=claims.email,
            details={"revoked_sessions": revoked},
        )

    def change_password(
        self,
        user_id: UUID,
        old_password: str,
        new_password: str,
        client: ClientInfo | None = None,
    ) -> None:
        """Change password and revoke every session, including the caller's.

        No new tokens are issued; the caller must log in again.

        Raises:
            InvalidCredentialsError: Current password is wrong.
            PasswordPolicyError: New password too weak.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise InvalidCredentialsError("User not found")

        if not self._hasher.verify(old_password, user.password_hash):
            raise InvalidCredentialsError("Invalid current password")

        PasswordPolicy.validate(new_password)
        self._auth_db.update_password_hash(user.id, self._hasher.hash(new_password))

        revoked = self._token_issuer.revoke_all(user.id)
        self._audit(
            SecurityEvent.PASSWORD_CHANGE, client, user_id=user.id, email=user.email,
            details={"revoked_sessions": revoked},
        )

    # MFA enrollment

    def begin_mfa_enrollment(self, user_id: UUID) -> MfaEnrollment:
        """Generate and store a TOTP secret. MFA stays off until confirmed.

        Raises:
            UserNotFoundError: Unknown user.
            ConflictError: MFA already enabled.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")

        secret = TotpCodeVerifier.generate_secret()
        self._auth_db.set_mfa(user.id, secret, enabled=False)
        return MfaEnrollment(
            secret=secret,
            provisioning_uri=TotpCodeVerifier.provisioning_uri(secret, user.email, self._config.app_name),
        )

    def confirm_mfa_enrollment(self, user_id: UUID, code: str, client: ClientInfo | None = None) -> None:
        """Enable MFA once the user proves their authenticator produces valid codes.

        Raises:
            UserNotFoundError: Unknown user.
            ValidationError: Enrollment was never started.
            ConflictError: MFA already enabled.
            RateLimitedError: Too many code attempts.
            InvalidCredentialsError: Wrong code.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not user.mfa_secret:
            raise ValidationError("MFA enrollment has not been started")

        if not self._rate_limiter.check(
            self.MFA_ACTION,
            str(user.id),
            self._config.mfa_rate_limit_attempts,
            self._config.mfa_rate_limit_window_seconds,
        ):
            raise RateLimitedError()

        if not self._mfa.verify_code(user.id, code):
            raise InvalidCredentialsError("Invalid MFA code")

        self._auth_db.set_mfa(user.id, user.mfa_secret, enabled=True)
        self._audit(SecurityEvent.MFA_ENABLED, client, user_id=user.id, email=user.email)

    def disable_mfa(self, user_id: UUID, password: str, client: ClientInfo | None = None) -> None:
        """Turn MFA off and discard the secret. Requires the account password.

        Raises:
            UserNotFoundError: Unknown user.
            InvalidCredentialsError: Wrong password.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        if not self._hasher.verify(password, user.password_hash):
            raise InvalidCredentialsError("Invalid password")

        self._auth_db.set_mfa(user.id, None, enabled=False)
        self._audit(SecurityEvent.MFA_DISABLED, client, user_id=user.id, email=user.email)

    # Lookups

    def get_current_user(self, access_token: str) -> PublicUser:
        """Resolve an access token to its user.

        Raises:
            InvalidTokenError: Token invalid or revoked, or user inactive.
        """
        claims = self._token_issuer.verify_access(access_token)
        if claims is None:
            raise InvalidTokenError("Invalid or expired token")
        return self._active_user(claims.user_id).to_public()

    def get_user(self, user_id: UUID) -> PublicUser:
        """
        Raises:
            UserNotFoundError: Unknown user.
        """
        user = self._auth_db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return user.to_public()
