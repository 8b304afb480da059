"""
Valkey (Redis-compatible) client for token grants, rate limits and queues.

Simple wrapper around redis-py. Connection URL from Vault.
Fail-fast: raises on connection failure, never returns fallback values.
Callers that must fail closed (token verification) catch redis.RedisError
themselves.
"""

import json
import logging

import redis

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        client.set("key", "value", expire_seconds=300)
        value = client.get("key")  # Returns None if missing
    """

    def __init__(self, url: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)
            timeout_seconds: Socket connect/read timeout. A hung cache turns
                into redis.TimeoutError instead of a hung request.

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    def get(self, key: str) -> str | None:
        """
        Get value by key.

        Returns None if key doesn't exist (not an error).
        Raises on connection failure.
        """
        return self._client.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        """
        Set key to value, optionally with expiration.

        Args:
            key: Key to set
            value: Value to store
            expire_seconds: TTL in seconds (None for no expiration)
        """
        if expire_seconds is not None:
            self._client.setex(key, expire_seconds, value)
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> bool:
        """
        Delete one or more keys.

        Returns True if at least one key existed and was deleted.
        """
        if not keys:
            return False
        return self._client.delete(*keys) > 0

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        return self._client.exists(key) > 0

    def ttl(self, key: str) -> int:
        """
        Get remaining TTL in seconds.

        Returns:
            -2 if key doesn't exist
            -1 if key has no expiration
            Positive int: remaining seconds
        """
        return self._client.ttl(key)

    def increment(self, key: str, expire_seconds: int) -> int:
        """
        Increment counter, starting its TTL on first increment.

        INCR and EXPIRE NX go out as one MULTI/EXEC, so a counter never
        exists without a TTL. NX keeps later increments from extending
        it, so the counter lives for exactly one window.

        Returns the new value.
        """
        with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, expire_seconds, nx=True)
            count, _ = pipe.execute()
        return count

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        """
        Set key to JSON-serialized value.

        Args:
            key: Key to set
            value: Dict or list to serialize
            expire_seconds: TTL in seconds (None for no expiration)
        """
        json_str = json.dumps(value)
        self.set(key, json_str, expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        """
        Get and deserialize JSON value.

        Returns None if key doesn't exist.
        Raises ValueError if value is not valid JSON.
        """
        value = self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    def push_json(self, key: str, value: dict) -> None:
        """Append JSON-serialized value to the tail of a list."""
        self._client.rpush(key, json.dumps(value))

    def pop_json(self, key: str) -> dict | None:
        """
        Remove and return the head of a list.

        Returns None if the list is empty.
        Raises ValueError if the entry is not valid JSON.
        """
        value = self._client.lpop(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in list '{key}': {e}")

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")
