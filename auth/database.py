"""Database operations for authentication.

Tables: users, refresh_tokens. Accessed before any user identity is
established. Refresh token rows are only ever inserted, flipped to
revoked, or swept - never otherwise updated.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import psycopg2.errors
from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from auth.exceptions import ConflictError
from auth.types import Role, User, RefreshTokenRecord
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_USER_COLUMNS = """id, email, password_hash, nickname, roles, email_verified,
    email_verified_at, mfa_enabled, mfa_secret, is_active, preferences,
    created_at, last_login_at, last_activity_at"""

_REFRESH_COLUMNS = "id, user_id, token, expires_at, revoked, created_at"


def _as_uuid(value: Any) -> UUID:
    return UUID(value) if isinstance(value, str) else value


def _row_to_user(row: dict) -> User:
    return User(
        id=_as_uuid(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        nickname=row["nickname"],
        roles=[Role(r) for r in row["roles"] or []],
        email_verified=row["email_verified"],
        email_verified_at=row["email_verified_at"],
        mfa_enabled=row["mfa_enabled"],
        mfa_secret=row["mfa_secret"],
        is_active=row["is_active"],
        preferences=row["preferences"] or {},
        created_at=row["created_at"],
        last_login_at=row["last_login_at"],
        last_activity_at=row["last_activity_at"],
    )


def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=_as_uuid(row["id"]),
        user_id=_as_uuid(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        revoked=row["revoked"],
        created_at=row["created_at"],
    )


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthDatabase:
    """Database operations for authentication."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # Users

    def get_user_by_email(self, email: str) -> User | None:
        """Find user by email (case- and whitespace-insensitive)."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s",
            (normalize_email(email),),
        )
        return _row_to_user(row) if row else None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        """Find user by ID."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        return _row_to_user(row) if row else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        nickname: str | None,
        roles: list[Role],
        preferences: dict,
    ) -> User:
        """Insert new user.

        Raises:
            ConflictError: If the normalized email is already registered.
        """
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO users (email, password_hash, nickname, roles, preferences)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}""",
                (
                    normalize_email(email),
                    password_hash,
                    nickname,
                    [r.value for r in roles],
                    Json(preferences),
                ),
            )
        except psycopg2.errors.UniqueViolation:
            raise ConflictError("User with this email already exists")
        return _row_to_user(rows[0])

    def update_login_info(self, user_id: UUID) -> None:
        """Stamp last_login_at and last_activity_at with the current time."""
        now = now_utc()
        self._db.execute_returning(
            """UPDATE users SET last_login_at = %s, last_activity_at = %s
               WHERE id = %s RETURNING id""",
            (now, now, user_id),
        )

    def mark_email_verified(self, user_id: UUID) -> bool:
        """Set email_verified. Returns False if user not found."""
        rows = self._db.execute_returning(
            """UPDATE users SET email_verified = true, email_verified_at = %s
               WHERE id = %s RETURNING id""",
            (now_utc(), user_id),
        )
        return len(rows) > 0

    def update_password_hash(self, user_id: UUID, password_hash: str) -> bool:
        """Replace password hash. Returns False if user not found."""
        rows = self._db.execute_returning(
            "UPDATE users SET password_hash = %s WHERE id = %s RETURNING id",
            (password_hash, user_id),
        )
        return len(rows) > 0

    def set_mfa(self, user_id: UUID, secret: str | None, enabled: bool) -> bool:
        """Store MFA secret and enabled flag. Returns False if user not found."""
        rows = self._db.execute_returning(
            "UPDATE users SET mfa_secret = %s, mfa_enabled = %s WHERE id = %s RETURNING id",
            (secret, enabled, user_id),
        )
        return len(rows) > 0

    # Refresh tokens

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        """Persist a newly issued refresh token."""
        self._db.execute_returning(
            f"""INSERT INTO refresh_tokens ({_REFRESH_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING id""",
            (
                record.id,
                record.user_id,
                record.token,
                record.expires_at,
                record.revoked,
                record.created_at,
            ),
        )

    def get_refresh_token(self, token_id: UUID) -> RefreshTokenRecord | None:
        """Find refresh token row by its jti."""
        row = self._db.execute_single(
            f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE id = %s",
            (token_id,),
        )
        return _row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token_id: UUID) -> bool:
        """Revoke one token if not already revoked.

        Returns:
            True if this call flipped the flag.
        """
        rows = self._db.execute_returning(
            """UPDATE refresh_tokens SET revoked = true, revoked_at = %s
               WHERE id = %s AND revoked = false
               RETURNING id""",
            (now_utc(), token_id),
        )
        return len(rows) > 0

    def revoke_all_refresh_tokens(self, user_id: UUID) -> int:
        """Revoke every unrevoked token for user. Returns count revoked."""
        rows = self._db.execute_returning(
            """UPDATE refresh_tokens SET revoked = true, revoked_at = %s
               WHERE user_id = %s AND revoked = false
               RETURNING id""",
            (now_utc(), user_id),
        )
        return len(rows)

    def delete_stale_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int:
        """Delete expired rows and rows revoked before the cutoff. Returns count deleted."""
        rows = self._db.execute_returning(
            """DELETE FROM refresh_tokens
               WHERE expires_at < %s
                  OR (revoked = true AND revoked_at < %s)
               RETURNING id""",
            (now, revoked_before),
        )
        return len(rows)
