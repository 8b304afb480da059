"""
In-memory stand-ins for Valkey and the auth tables.

They implement the public methods of ValkeyClient and AuthDatabase that
the auth package calls, with the same return conventions, so the suite
runs without Postgres or Valkey. Expiry follows a FakeClock that tests
can advance.
"""

import json
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import redis

from auth.database import normalize_email
from auth.exceptions import ConflictError
from auth.types import RefreshTokenRecord, Role, User


class FakeClock:
    """Real time plus an adjustable offset."""

    def __init__(self):
        self.offset = timedelta(0)

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset

    def timestamp(self) -> float:
        return self.now().timestamp()

    def advance(self, seconds: float) -> None:
        self.offset += timedelta(seconds=seconds)

    def align_to_window(self, window_seconds: int) -> None:
        """Jump to one second past the next window boundary.

        Keeps fixed-window tests from straddling a boundary by accident.
        """
        now = self.timestamp()
        boundary = (int(now) // window_seconds + 1) * window_seconds
        self.advance(boundary - now + 1)


class FakeValkey:
    """
    Dict-backed replacement for ValkeyClient.

    Set `fail_with` to an exception instance to make every call raise it,
    e.g. redis.ConnectionError() to simulate the cache being down.
    """

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.fail_with: Exception | None = None
        self._data: dict[str, str | list] = {}
        self._expires: dict[str, float] = {}

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _purge(self, key: str) -> None:
        expires_at = self._expires.get(key)
        if expires_at is not None and self.clock.timestamp() >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _live(self, key: str):
        self._purge(key)
        return self._data.get(key)

    def keys(self) -> list[str]:
        """All live keys (test helper, not part of ValkeyClient)."""
        for key in list(self._data):
            self._purge(key)
        return sorted(self._data)

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str) -> str | None:
        self._check()
        value = self._live(key)
        if isinstance(value, list):
            raise redis.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
        return value

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        self._check()
        self._data[key] = str(value)
        if expire_seconds is not None:
            self._expires[key] = self.clock.timestamp() + expire_seconds
        else:
            self._expires.pop(key, None)

    def delete(self, *keys: str) -> bool:
        self._check()
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed > 0

    def exists(self, key: str) -> bool:
        self._check()
        return self._live(key) is not None

    def ttl(self, key: str) -> int:
        self._check()
        if self._live(key) is None:
            return -2
        if key not in self._expires:
            return -1
        return int(self._expires[key] - self.clock.timestamp())

    def increment(self, key: str, expire_seconds: int) -> int:
        self._check()
        count = int(self._live(key) or 0) + 1
        self._data[key] = str(count)
        if count == 1:
            self._expires[key] = self.clock.timestamp() + expire_seconds
        return count

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        value = self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    def push_json(self, key: str, value: dict) -> None:
        self._check()
        self._data.setdefault(key, []).append(json.dumps(value))

    def pop_json(self, key: str) -> dict | None:
        self._check()
        queue = self._data.get(key)
        if not queue:
            return None
        value = queue.pop(0)
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in list '{key}': {e}")

    def queue_length(self, key: str) -> int:
        """Items in a list (test helper)."""
        return len(self._data.get(key) or [])

    def close(self) -> None:
        pass


class FakeAuthDatabase:
    """In-memory replacement for AuthDatabase."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.users: dict[UUID, User] = {}
        self.refresh_tokens: dict[UUID, RefreshTokenRecord] = {}
        self.revoked_at: dict[UUID, datetime] = {}

    # Users

    def get_user_by_email(self, email: str) -> User | None:
        email = normalize_email(email)
        for user in self.users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        user = self.users.get(user_id)
        return user.model_copy(deep=True) if user else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        nickname: str | None,
        roles: list[Role],
        preferences: dict,
    ) -> User:
        email = normalize_email(email)
        if self.get_user_by_email(email) is not None:
            raise ConflictError("User with this email already exists")
        user = User(
            id=uuid4(),
            email=email,
            password_hash=password_hash,
            nickname=nickname,
            roles=list(roles),
            preferences=dict(preferences),
            created_at=self.clock.now(),
        )
        self.users[user.id] = user
        return user.model_copy(deep=True)

    def _update(self, user_id: UUID, **fields) -> bool:
        user = self.users.get(user_id)
        if user is None:
            return False
        self.users[user_id] = user.model_copy(update=fields)
        return True

    def update_login_info(self, user_id: UUID) -> None:
        now = self.clock.now()
        self._update(user_id, last_login_at=now, last_activity_at=now)

    def mark_email_verified(self, user_id: UUID) -> bool:
        return self._update(user_id, email_verified=True, email_verified_at=self.clock.now())

    def update_password_hash(self, user_id: UUID, password_hash: str) -> bool:
        return self._update(user_id, password_hash=password_hash)

    def set_mfa(self, user_id: UUID, secret: str | None, enabled: bool) -> bool:
        return self._update(user_id, mfa_secret=secret, mfa_enabled=enabled)

    # Refresh tokens

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        self.refresh_tokens[record.id] = record.model_copy()

    def get_refresh_token(self, token_id: UUID) -> RefreshTokenRecord | None:
        record = self.refresh_tokens.get(token_id)
        return record.model_copy() if record else None

    def revoke_refresh_token(self, token_id: UUID) -> bool:
        record = self.refresh_tokens.get(token_id)
        if record is None or record.revoked:
            return False
        self.refresh_tokens[token_id] = record.model_copy(update={"revoked": True})
        self.revoked_at[token_id] = self.clock.now()
        return True

    def revoke_all_refresh_tokens(self, user_id: UUID) -> int:
        active = [
            r.id for r in self.refresh_tokens.values()
            if r.user_id == user_id and not r.revoked
        ]
        for token_id in active:
            self.revoke_refresh_token(token_id)
        return len(active)

    def delete_stale_refresh_tokens(self, now: datetime, revoked_before: datetime) -> int:
        stale = [
            r.id for r in self.refresh_tokens.values()
            if r.expires_at < now
            or (r.revoked and self.revoked_at.get(r.id, now) < revoked_before)
        ]
        for token_id in stale:
            del self.refresh_tokens[token_id]
            self.revoked_at.pop(token_id, None)
        return len(stale)

    # Test helpers

    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user
