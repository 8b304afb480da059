"""Shared test fixtures for the auth test suite.

Everything runs in memory: Valkey and the auth tables are replaced by the
fakes in tests/fakes.py, the audit sink by a Mock. Nothing here needs Vault,
Postgres or Valkey.
"""

from unittest.mock import Mock
from uuid import UUID, uuid4

import pytest

from auth.config import AuthConfig
from auth.mfa import MfaChallenge, TotpCodeVerifier
from auth.notifications import NotificationSink
from auth.password import CredentialHasher
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.tokens import TokenIssuer
from auth.types import Role, User
from utils.user_context import clear_current_user_id
from tests.fakes import FakeAuthDatabase, FakeClock, FakeValkey


# =============================================================================
# TEST CONSTANTS
# =============================================================================

TEST_SECRET = "test-signing-secret-that-is-at-least-32-bytes"
TEST_PASSWORD = "Str0ng!Pass"
TEST_EMAIL = "ann@example.com"
TEST_USER_ID = UUID("00000000-0000-0000-0000-000000000001")


# =============================================================================
# CONTEXT AND CLOCK
# =============================================================================


@pytest.fixture(autouse=True)
def reset_user_context():
    """Ensure clean user context before and after each test."""
    clear_current_user_id()
    yield
    clear_current_user_id()


@pytest.fixture
def clock(monkeypatch):
    """Adjustable clock shared by the fakes and the rate limiter window."""
    clock = FakeClock()
    monkeypatch.setattr("auth.rate_limiter.now_utc", clock.now)
    return clock


# =============================================================================
# INFRASTRUCTURE FAKES
# =============================================================================


@pytest.fixture
def valkey(clock):
    return FakeValkey(clock)


@pytest.fixture
def auth_db(clock):
    return FakeAuthDatabase(clock)


@pytest.fixture
def security_logger():
    """Audit sink mock - assert on .log calls."""
    return Mock(spec=SecurityLogger)


# =============================================================================
# AUTH COMPONENTS
# =============================================================================


@pytest.fixture
def config():
    """Test config: cheap bcrypt, production TTLs and limits."""
    return AuthConfig(bcrypt_rounds=4, app_base_url="https://app.example.com")


@pytest.fixture
def hasher(config):
    return CredentialHasher(rounds=config.bcrypt_rounds)


@pytest.fixture
def token_issuer(config, auth_db, valkey):
    return TokenIssuer(config, auth_db, valkey, TEST_SECRET)


@pytest.fixture
def rate_limiter(valkey):
    return RateLimiter(valkey)


@pytest.fixture
def mfa_challenge(valkey, config, auth_db):
    return MfaChallenge(valkey, config, TotpCodeVerifier(auth_db))


@pytest.fixture
def notifications(valkey, config):
    return NotificationSink(valkey, config.app_base_url)


@pytest.fixture
def auth_service(
    config, auth_db, token_issuer, mfa_challenge, rate_limiter, hasher,
    security_logger, notifications, valkey,
):
    return AuthService(
        config=config,
        auth_db=auth_db,
        token_issuer=token_issuer,
        mfa_challenge=mfa_challenge,
        rate_limiter=rate_limiter,
        hasher=hasher,
        security_logger=security_logger,
        notifications=notifications,
        valkey=valkey,
    )


# =============================================================================
# USERS
# =============================================================================


@pytest.fixture
def make_user(auth_db, hasher, clock):
    """Factory inserting a user straight into the fake database."""

    def _make(
        email: str = TEST_EMAIL,
        password: str = TEST_PASSWORD,
        **overrides,
    ) -> User:
        fields = {
            "id": uuid4(),
            "email": email,
            "password_hash": hasher.hash(password),
            "nickname": "Ann",
            "roles": [Role.STUDENT],
            "created_at": clock.now(),
        }
        fields.update(overrides)
        return auth_db.add_user(User(**fields))

    return _make


@pytest.fixture
def user(make_user) -> User:
    """A verified-email, active, non-MFA student."""
    return make_user(id=TEST_USER_ID, email_verified=True)
