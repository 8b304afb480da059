"""Tests for RateLimiter - fixed-window attempt counters."""

import pytest

from auth.rate_limiter import RateLimiter


LIMIT = 5
WINDOW = 300


@pytest.fixture
def aligned(clock):
    """Clock positioned at the start of a fresh window."""
    clock.align_to_window(WINDOW)
    return clock


class TestCheck:
    """Test counting and the allow/deny decision."""

    def test_first_attempt_allowed(self, rate_limiter, aligned):
        assert rate_limiter.check("login", "user-1", LIMIT, WINDOW) is True

    def test_attempts_up_to_limit_allowed(self, rate_limiter, aligned):
        results = [rate_limiter.check("login", "user-1", LIMIT, WINDOW) for _ in range(LIMIT)]

        assert results == [True] * LIMIT

    def test_sixth_attempt_denied(self, rate_limiter, aligned):
        """Post-increment count above the limit is denied."""
        for _ in range(LIMIT):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.check("login", "user-1", LIMIT, WINDOW) is False

    def test_denied_attempts_keep_counting(self, rate_limiter, aligned):
        for _ in range(LIMIT + 3):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.check("login", "user-1", LIMIT, WINDOW) is False

    def test_window_elapse_allows_again(self, rate_limiter, aligned):
        """After the window passes a fresh bucket starts."""
        for _ in range(LIMIT + 1):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        aligned.advance(WINDOW)

        assert rate_limiter.check("login", "user-1", LIMIT, WINDOW) is True

    def test_subjects_tracked_separately(self, rate_limiter, aligned):
        for _ in range(LIMIT + 1):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.check("login", "user-2", LIMIT, WINDOW) is True

    def test_actions_tracked_separately(self, rate_limiter, aligned):
        for _ in range(LIMIT + 1):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.check("password_reset", "user-1", LIMIT, WINDOW) is True

    def test_subject_case_insensitive(self, rate_limiter, aligned):
        """Emails differing only in case share a counter."""
        for _ in range(3):
            rate_limiter.check("verification_email", "Ann@Example.com", 3, WINDOW)

        assert rate_limiter.check("verification_email", "ann@example.com", 3, WINDOW) is False

    def test_counter_expires_with_window(self, rate_limiter, valkey, aligned):
        """Counter key TTL equals the window."""
        rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        (key,) = valkey.keys()
        assert key.startswith("ratelimit:login:user-1:")
        assert 0 < valkey.ttl(key) <= WINDOW

    @pytest.mark.parametrize("window", [0, -1])
    def test_non_positive_window_rejected(self, rate_limiter, window):
        with pytest.raises(ValueError, match="window_seconds"):
            rate_limiter.check("login", "user-1", LIMIT, window)


class TestRemainingAndReset:
    """Read-only inspection and clearing."""

    def test_remaining_without_attempts(self, rate_limiter, aligned):
        assert rate_limiter.remaining("login", "user-1", LIMIT, WINDOW) == LIMIT

    def test_remaining_does_not_consume(self, rate_limiter, aligned):
        rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.remaining("login", "user-1", LIMIT, WINDOW) == LIMIT - 1
        assert rate_limiter.remaining("login", "user-1", LIMIT, WINDOW) == LIMIT - 1

    def test_remaining_never_negative(self, rate_limiter, aligned):
        for _ in range(LIMIT + 2):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        assert rate_limiter.remaining("login", "user-1", LIMIT, WINDOW) == 0

    def test_reset_clears_counter(self, rate_limiter, aligned):
        for _ in range(LIMIT + 1):
            rate_limiter.check("login", "user-1", LIMIT, WINDOW)

        rate_limiter.reset("login", "user-1", WINDOW)

        assert rate_limiter.check("login", "user-1", LIMIT, WINDOW) is True


class TestKeying:
    """Key layout."""

    def test_key_contains_bucket(self, valkey, aligned):
        limiter = RateLimiter(valkey)
        bucket = int(aligned.timestamp()) // WINDOW

        assert limiter._key("login", "User-1", WINDOW) == f"ratelimit:login:user-1:{bucket}"
