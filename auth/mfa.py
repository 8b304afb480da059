"""
Second-factor challenge flow.

After a correct password for an MFA-enabled account, the caller gets an
opaque challenge token instead of a session. The challenge lives in Valkey
for a few minutes and maps back to the user id. It is consumed once the
code check succeeds.
"""

import logging
import secrets
from typing import Protocol
from uuid import UUID

import pyotp

from auth.config import AuthConfig
from auth.database import AuthDatabase
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


class CodeVerifier(Protocol):
    """Checks a second-factor code for a user."""

    def verify(self, user_id: UUID, code: str) -> bool: ...


class TotpCodeVerifier:
    """RFC 6238 TOTP codes against the secret stored on the user row."""

    def __init__(self, auth_db: AuthDatabase, valid_window: int = 1):
        self._auth_db = auth_db
        self._valid_window = valid_window

    def verify(self, user_id: UUID, code: str) -> bool:
        user = self._auth_db.get_user_by_id(user_id)
        if user is None or not user.mfa_secret:
            return False
        # One step either side tolerates clock drift on the device
        return pyotp.TOTP(user.mfa_secret).verify(code.strip(), valid_window=self._valid_window)

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    @staticmethod
    def provisioning_uri(secret: str, email: str, issuer_name: str) -> str:
        """otpauth:// URI for authenticator app enrollment (QR code payload)."""
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer_name)


class MfaChallenge:
    """Issues and resolves short-lived MFA challenge tokens."""

    KEY_PREFIX = "mfa_challenge:"

    def __init__(self, valkey: ValkeyClient, config: AuthConfig, code_verifier: CodeVerifier):
        self._valkey = valkey
        self._config = config
        self._code_verifier = code_verifier

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    def issue(self, user_id: UUID) -> str:
        token = secrets.token_urlsafe(32)
        self._valkey.set(
            self._key(token),
            str(user_id),
            expire_seconds=self._config.mfa_challenge_ttl_seconds,
        )
        logger.info(f"MFA challenge issued for user {user_id}")
        return token

    def verify(self, token: str) -> UUID | None:
        """Resolve challenge to user id without consuming it."""
        if not token:
            return None
        value = self._valkey.get(self._key(token))
        if value is None:
            return None
        try:
            return UUID(value)
        except ValueError:
            logger.error(f"Corrupt MFA challenge entry: {value!r}")
            return None

    def consume(self, token: str) -> bool:
        """Delete the challenge. Returns False if it was already gone."""
        return self._valkey.delete(self._key(token))

    def verify_code(self, user_id: UUID, code: str) -> bool:
        return self._code_verifier.verify(user_id, code)
