"""
Password strength policy and credential hashing.

PasswordPolicy is the enforced gate (validate) plus an informational
score. CredentialHasher wraps bcrypt and always answers verify() with a
boolean, never an exception.
"""

import base64
import hashlib
import hmac
import logging
import re
import secrets

import bcrypt

from auth.exceptions import PasswordPolicyError
from auth.types import StrengthLabel

logger = logging.getLogger(__name__)


class PasswordPolicy:
    """Password strength validator and scorer."""

    MIN_LENGTH = 8
    MAX_LENGTH = 128
    MIN_CHARACTER_CLASSES = 3
    RUN_LENGTH = 3

    COMMON_PASSWORDS = frozenset({
        "password", "password123", "123456", "123456789", "qwerty",
        "abc123", "password1", "admin", "root", "user", "guest",
        "welcome", "letmein", "monkey", "dragon", "sunshine",
        "princess", "football", "baseball", "freedom", "whatever",
        "trustno1", "master", "hello", "access", "shadow",
    })

    SEQUENCES = (
        "abcdefghijklmnopqrstuvwxyz",
        "0123456789",
        "qwertyuiop",
        "asdfghjkl",
        "zxcvbnm",
    )

    UPPERCASE = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    LOWERCASE = "abcdefghijklmnopqrstuvwxyz"
    DIGITS = "0123456789"
    SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

    # Lowest score in each bucket, highest first
    STRENGTH_THRESHOLDS = (
        (80, StrengthLabel.VERY_STRONG),
        (60, StrengthLabel.STRONG),
        (40, StrengthLabel.MEDIUM),
        (20, StrengthLabel.WEAK),
    )

    @staticmethod
    def _character_classes(password: str) -> list[bool]:
        return [
            bool(re.search(r"[A-Z]", password)),
            bool(re.search(r"[a-z]", password)),
            bool(re.search(r"\d", password)),
            bool(re.search(r"[^A-Za-z0-9]", password)),
        ]

    @classmethod
    def has_sequential_chars(cls, password: str) -> bool:
        """True if any 3-run of a known sequence appears, forward or reversed."""
        lowered = password.lower()
        for sequence in cls.SEQUENCES:
            for i in range(len(sequence) - cls.RUN_LENGTH + 1):
                run = sequence[i : i + cls.RUN_LENGTH]
                if run in lowered or run[::-1] in lowered:
                    return True
        return False

    @classmethod
    def has_repeating_chars(cls, password: str) -> bool:
        """True if the same character appears 3+ times in a row."""
        return re.search(r"(.)\1{%d,}" % (cls.RUN_LENGTH - 1), password, re.DOTALL) is not None

    @classmethod
    def is_common(cls, password: str) -> bool:
        return password.lower() in cls.COMMON_PASSWORDS

    @classmethod
    def check(cls, password: str) -> list[str]:
        """Return every policy violation (empty list if acceptable)."""
        violations = []

        if len(password) < cls.MIN_LENGTH:
            violations.append(f"Password must be at least {cls.MIN_LENGTH} characters long")
        if len(password) > cls.MAX_LENGTH:
            violations.append(f"Password must not exceed {cls.MAX_LENGTH} characters")

        if sum(cls._character_classes(password)) < cls.MIN_CHARACTER_CLASSES:
            violations.append(
                "Password must contain at least 3 of the following: "
                "uppercase letter, lowercase letter, number, special character"
            )

        if cls.is_common(password):
            violations.append("Password is too common. Please choose a more secure password")

        if cls.has_sequential_chars(password):
            violations.append("Password should not contain 3 or more sequential characters")

        if cls.has_repeating_chars(password):
            violations.append("Password should not contain 3 or more repeating characters")

        return violations

    @classmethod
    def validate(cls, password: str) -> None:
        """
        Enforce the policy.

        Raises:
            PasswordPolicyError: With every violation found.
        """
        violations = cls.check(password)
        if violations:
            raise PasswordPolicyError(violations)

    @classmethod
    def score(cls, password: str) -> int:
        """Strength score 0..100. Informational only - validate() is the gate."""
        score = 0
        length = len(password)

        # Length, up to 30
        for threshold in (8, 12, 16):
            if length >= threshold:
                score += 10

        # Character classes, up to 40
        score += 10 * sum(cls._character_classes(password))

        # Unique characters, up to 20
        unique = len(set(password))
        score += min(20, unique * 2)

        # Diversity bonus, up to 10
        if length >= 20:
            score += 5
        if length and unique >= length * 0.8:
            score += 5

        if cls.has_sequential_chars(password):
            score -= 10
        if cls.has_repeating_chars(password):
            score -= 10
        if cls.is_common(password):
            score -= 20

        return max(0, min(100, score))

    @classmethod
    def describe(cls, score: int) -> StrengthLabel:
        for threshold, label in cls.STRENGTH_THRESHOLDS:
            if score >= threshold:
                return label
        return StrengthLabel.VERY_WEAK

    @classmethod
    def generate(cls, length: int = 16) -> str:
        """Random password containing every character class that passes validate()."""
        if not cls.MIN_LENGTH <= length <= cls.MAX_LENGTH:
            raise ValueError(f"length must be between {cls.MIN_LENGTH} and {cls.MAX_LENGTH}")

        alphabet = cls.UPPERCASE + cls.LOWERCASE + cls.DIGITS + cls.SYMBOLS
        rng = secrets.SystemRandom()

        while True:
            chars = [
                secrets.choice(cls.UPPERCASE),
                secrets.choice(cls.LOWERCASE),
                secrets.choice(cls.DIGITS),
                secrets.choice(cls.SYMBOLS),
            ]
            chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
            rng.shuffle(chars)
            candidate = "".join(chars)
            if not cls.check(candidate):
                return candidate

    @classmethod
    def describe_policy(cls) -> dict:
        """Policy parameters for clients rendering password hints."""
        return {
            "min_length": cls.MIN_LENGTH,
            "max_length": cls.MAX_LENGTH,
            "min_character_classes": cls.MIN_CHARACTER_CLASSES,
            "prevent_common_passwords": True,
            "prevent_sequential_chars": True,
            "prevent_repeating_chars": True,
            "max_sequential_length": cls.RUN_LENGTH - 1,
            "max_repeating_length": cls.RUN_LENGTH - 1,
        }


class CredentialHasher:
    """
    bcrypt password hashing.

    bcrypt only consumes the first 72 bytes of its input, and the policy
    allows 128 characters of arbitrary UTF-8. Passwords are therefore
    reduced with HMAC-SHA256 first and the base64 digest (44 bytes) is
    what bcrypt sees. Digests made this way carry PREHASH_TAG in front of
    the bcrypt string; untagged digests are plain bcrypt from before the
    pre-hash and still verify until needs_rehash() upgrades them.
    """

    PREHASH_TAG = "$sha256"
    PREHASH_KEY = b"credential-hasher-v1"

    # Plain bcrypt digests were made from the first 72 bytes only
    MAX_BCRYPT_BYTES = 72

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def _prehash(self, password: str) -> bytes:
        mac = hmac.new(self.PREHASH_KEY, password.encode("utf-8"), hashlib.sha256)
        return base64.b64encode(mac.digest())

    def _legacy_encode(self, password: str) -> bytes:
        return password.encode("utf-8")[: self.MAX_BCRYPT_BYTES]

    def hash(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        digest = bcrypt.hashpw(self._prehash(password), salt).decode("utf-8")
        return f"{self.PREHASH_TAG}{digest}"

    def verify(self, password: str, digest: str) -> bool:
        """Check password against digest. Malformed digests verify as False."""
        try:
            if digest.startswith(self.PREHASH_TAG):
                bcrypt_digest = digest[len(self.PREHASH_TAG):].encode("utf-8")
                return bcrypt.checkpw(self._prehash(password), bcrypt_digest)
            return bcrypt.checkpw(self._legacy_encode(password), digest.encode("utf-8"))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Password verification failed on malformed digest: {e}")
            return False

    def needs_rehash(self, digest: str) -> bool:
        """True for plain bcrypt digests and for a lower cost than configured."""
        prehashed = digest.startswith(self.PREHASH_TAG)
        if prehashed:
            digest = digest[len(self.PREHASH_TAG):]

        parts = digest.split("$")
        if len(parts) < 4 or not parts[2].isdigit():
            return False
        return not prehashed or int(parts[2]) < self.rounds
