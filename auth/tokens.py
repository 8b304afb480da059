"""
Signed token lifecycle: access/refresh pairs and single-use tokens.

Tokens are HS256 JWTs, but a valid signature is never enough on its own:

- Access tokens also need a grant entry in Valkey (access_token:{jti}).
  Deleting the grant, writing a per-token revocation marker, or writing a
  per-user blacklist marker revokes a token before it expires. If Valkey
  cannot be reached the token is rejected (fail closed).
- Refresh tokens also need an unrevoked, unexpired row in refresh_tokens.
- Single-use tokens also need to match the one value cached for their
  (purpose, user) pair; a successful verification deletes it.
"""

import hmac
import logging
from datetime import timedelta
from uuid import UUID, uuid4

import jwt
import psycopg2
import redis

from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.permissions import permissions_for_roles
from auth.types import (
    AccessTokenClaims,
    RefreshClaims,
    RefreshTokenRecord,
    SingleUseClaims,
    SingleUsePurpose,
    TokenPair,
    User,
)
from clients.valkey_client import ValkeyClient
from utils.timezone import from_timestamp, now_utc

logger = logging.getLogger(__name__)

REFRESH_TOKEN_TYPE = "refresh"


class TokenIssuer:
    """Issues, verifies and revokes every signed token kind."""

    ACCESS_GRANT_PREFIX = "access_token:"
    REVOKED_TOKEN_PREFIX = "revoked_token:"
    USER_BLACKLIST_PREFIX = "user_blacklist:"

    def __init__(
        self,
        config: AuthConfig,
        auth_db: AuthDatabase,
        valkey: ValkeyClient,
        secret: str,
    ):
        if not secret:
            raise ValueError("Token signing secret is required")
        self._config = config
        self._auth_db = auth_db
        self._valkey = valkey
        self._secret = secret

    # Keys

    def _grant_key(self, jti: str) -> str:
        return f"{self.ACCESS_GRANT_PREFIX}{jti}"

    def _revoked_key(self, jti: str) -> str:
        return f"{self.REVOKED_TOKEN_PREFIX}{jti}"

    def _blacklist_key(self, user_id: UUID | str) -> str:
        return f"{self.USER_BLACKLIST_PREFIX}{user_id}"

    @staticmethod
    def _single_use_key(purpose: SingleUsePurpose, user_id: UUID | str) -> str:
        return f"{purpose.value}:{user_id}"

    def _single_use_ttl(self, purpose: SingleUsePurpose) -> int:
        if purpose is SingleUsePurpose.EMAIL_VERIFICATION:
            return self._config.email_verification_ttl_seconds
        return self._config.password_reset_ttl_seconds

    # Signing

    def _encode(self, claims: dict, ttl_seconds: int) -> str:
        now = now_utc()
        payload = {
            **claims,
            "iss": self._config.jwt_issuer,
            "aud": self._config.jwt_audience,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(payload, self._secret, algorithm=self._config.jwt_algorithm)

    def _decode(self, token: str, verify_exp: bool = True) -> dict | None:
        """Verify signature, issuer, audience and (optionally) expiry.

        Returns None for any invalid token.
        """
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._config.jwt_algorithm],
                audience=self._config.jwt_audience,
                issuer=self._config.jwt_issuer,
                options={
                    "require": ["sub", "jti", "iat", "exp"],
                    "verify_exp": verify_exp,
                },
            )
        except jwt.InvalidTokenError as e:
            logger.debug(f"Token rejected: {type(e).__name__}")
            return None

    # Access + refresh pairs

    def issue_pair(self, user: User) -> TokenPair:
        """Mint an access/refresh pair for user.

        The refresh row is persisted before the access grant is cached. If
        the grant write fails the row is revoked again and the error
        propagates, so a caller never receives half a pair.
        """
        roles = [role.value for role in user.roles]
        permissions = permissions_for_roles(user.roles)
        access_ttl = self._config.access_token_ttl_seconds
        refresh_ttl = self._config.refresh_token_ttl_seconds

        access_jti = str(uuid4())
        access_token = self._encode(
            {
                "sub": str(user.id),
                "email": user.email,
                "roles": roles,
                "permissions": permissions,
                "jti": access_jti,
            },
            access_ttl,
        )

        refresh_id = uuid4()
        refresh_token = self._encode(
            {
                "sub": str(user.id),
                "type": REFRESH_TOKEN_TYPE,
                "jti": str(refresh_id),
            },
            refresh_ttl,
        )

        now = now_utc()
        self._auth_db.create_refresh_token(
            RefreshTokenRecord(
                id=refresh_id,
                user_id=user.id,
                token=refresh_token,
                expires_at=now + timedelta(seconds=refresh_ttl),
                revoked=False,
                created_at=now,
            )
        )

        try:
            self._valkey.set_json(
                self._grant_key(access_jti),
                {
                    "user_id": str(user.id),
                    "email": user.email,
                    "roles": roles,
                    "permissions": permissions,
                    "issued_at": now_utc().timestamp(),
                },
                expire_seconds=access_ttl,
            )
        except redis.RedisError:
            logger.error(f"Access grant write failed for user {user.id}, revoking refresh token {refresh_id}")
            try:
                self._auth_db.revoke_refresh_token(refresh_id)
            except psycopg2.Error:
                # Orphaned row only affects refresh, and expires on its own
                logger.exception(f"Could not revoke orphaned refresh token {refresh_id}")
            raise

        logger.info(f"Issued token pair for user {user.id} (access {access_jti}, refresh {refresh_id})")
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_ttl,
        )

    def verify_access(self, token: str) -> AccessTokenClaims | None:
        """Verify access token. Returns None if invalid, revoked, or unverifiable."""
        payload = self._decode(token)
        if payload is None or "type" in payload:
            return None

        jti = payload["jti"]
        try:
            user_id = UUID(payload["sub"])
        except (ValueError, TypeError, AttributeError):
            return None

        try:
            grant = self._valkey.get_json(self._grant_key(jti))
            if grant is None:
                return None
            if self._valkey.exists(self._revoked_key(jti)):
                return None
            blacklisted_at = self._valkey.get(self._blacklist_key(user_id))
            revoked_since = float(blacklisted_at) if blacklisted_at is not None else None
            issued_at = float(grant.get("issued_at", 0))
        except (redis.RedisError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Cannot check access grant for {jti}, rejecting token: {e}")
            return None

        if grant.get("user_id") != str(user_id):
            return None

        if revoked_since is not None and issued_at <= revoked_since:
            return None

        return AccessTokenClaims(
            user_id=user_id,
            email=payload.get("email", ""),
            roles=payload.get("roles", []),
            permissions=payload.get("permissions", []),
            jti=jti,
            issued_at=from_timestamp(payload["iat"]),
            expires_at=from_timestamp(payload["exp"]),
        )

    def verify_refresh(self, token: str) -> RefreshClaims | None:
        """Verify refresh token against its durable row. Does not consume it."""
        payload = self._decode(token)
        if payload is None or payload.get("type") != REFRESH_TOKEN_TYPE:
            return None

        try:
            token_id = UUID(payload["jti"])
            user_id = UUID(payload["sub"])
        except (ValueError, TypeError, AttributeError):
            return None

        record = self._auth_db.get_refresh_token(token_id)
        if record is None or record.revoked or record.user_id != user_id:
            return None
        if record.expires_at <= now_utc():
            return None

        return RefreshClaims(user_id=user_id, jti=str(token_id))

    def revoke(self, refresh_token: str) -> bool:
        """Revoke one refresh token.

        Malformed, foreign or expired tokens are a no-op: logout callers
        routinely hand over tokens that are already dead.

        Returns:
            True if a row was revoked by this call.
        """
        payload = self._decode(refresh_token, verify_exp=False)
        if payload is None or payload.get("type") != REFRESH_TOKEN_TYPE:
            return False
        try:
            token_id = UUID(payload["jti"])
        except (ValueError, TypeError, AttributeError):
            return False
        return self._auth_db.revoke_refresh_token(token_id)

    def revoke_all(self, user_id: UUID) -> int:
        """Revoke every refresh token for user and blacklist their access tokens.

        Access tokens whose grant was issued at or before this moment are
        rejected for as long as the blacklist marker lives. Tokens issued
        afterwards (a fresh login) are unaffected.

        Returns:
            Number of refresh tokens revoked.
        """
        count = self._auth_db.revoke_all_refresh_tokens(user_id)
        self._valkey.set(
            self._blacklist_key(user_id),
            repr(now_utc().timestamp()),
            expire_seconds=self._config.user_blacklist_ttl_seconds,
        )
        logger.info(f"Revoked {count} refresh tokens and blacklisted access tokens for user {user_id}")
        return count

    def revoke_access(self, jti: str, ttl_seconds: int | None = None) -> None:
        """Revoke a single access token by id."""
        ttl = ttl_seconds or self._config.access_token_ttl_seconds
        self._valkey.set(self._revoked_key(jti), "true", expire_seconds=ttl)
        self._valkey.delete(self._grant_key(jti))

    # Single-use tokens

    def issue_single_use(self, purpose: SingleUsePurpose, user_id: UUID, email: str) -> str:
        """Mint a single-use token, replacing any earlier one for (purpose, user)."""
        ttl = self._single_use_ttl(purpose)
        token = self._encode(
            {
                "sub": str(user_id),
                "email": email,
                "type": purpose.value,
                "jti": str(uuid4()),
            },
            ttl,
        )
        self._valkey.set(self._single_use_key(purpose, user_id), token, expire_seconds=ttl)
        return token

    def verify_single_use(self, purpose: SingleUsePurpose, token: str) -> SingleUseClaims | None:
        """Verify and consume a single-use token.

        Only the most recently issued token for the pair matches. The
        cache entry is deleted before success is returned; if two callers
        race, only the one whose delete removed the entry wins.
        """
        payload = self._decode(token)
        if payload is None or payload.get("type") != purpose.value:
            return None

        try:
            user_id = UUID(payload["sub"])
        except (ValueError, TypeError, AttributeError):
            return None

        key = self._single_use_key(purpose, user_id)
        cached = self._valkey.get(key)
        if cached is None or not hmac.compare_digest(cached.encode(), token.encode()):
            return None

        if not self._valkey.delete(key):
            return None

        return SingleUseClaims(
            user_id=user_id,
            email=payload.get("email", ""),
            purpose=purpose,
        )

    # Maintenance

    def clean_expired_tokens(self) -> int:
        """Sweep expired refresh tokens and those revoked past the retention window."""
        now = now_utc()
        cutoff = now - timedelta(days=self._config.revoked_token_retention_days)
        count = self._auth_db.delete_stale_refresh_tokens(now=now, revoked_before=cutoff)
        logger.info(f"Swept {count} stale refresh tokens")
        return count
