"""
Background worker process.

Delivers queued notification emails and periodically sweeps stale refresh
token rows. Runs next to the API as its own process:

    auth-worker

Stops cleanly on SIGTERM or SIGINT after the current iteration.
"""

import logging
import signal
import threading
import time
from typing import Callable

import psycopg2
import redis

from api.app import build_auth_components
from auth.notifications import NotificationWorker
from auth.tokens import TokenIssuer

logger = logging.getLogger(__name__)


class AuthWorker:
    """Notification delivery loop with an interval-driven token sweep."""

    def __init__(
        self,
        notification_worker: NotificationWorker,
        token_issuer: TokenIssuer,
        poll_interval_seconds: float = 5.0,
        sweep_interval_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._notification_worker = notification_worker
        self._token_issuer = token_issuer
        self._poll_interval = poll_interval_seconds
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._last_sweep: float | None = None
        self._stop = threading.Event()

    def run_once(self) -> int:
        """
        One iteration: drain a batch of notifications, then sweep if due.

        The first iteration always sweeps. A failed sweep waits for the
        next interval rather than retrying every poll.

        Returns:
            Number of notifications delivered
        """
        delivered = self._notification_worker.run_once()

        now = self._clock()
        if self._last_sweep is None or now - self._last_sweep >= self._sweep_interval:
            self._last_sweep = now
            self._token_issuer.clean_expired_tokens()

        return delivered

    def run(self) -> None:
        """Loop until stop() is called. Waits only when there was nothing to deliver."""
        logger.info(
            f"Auth worker started (poll {self._poll_interval}s, sweep {self._sweep_interval}s)"
        )
        while not self._stop.is_set():
            try:
                delivered = self.run_once()
            except (redis.RedisError, psycopg2.Error):
                logger.exception("Auth worker iteration failed, retrying after poll interval")
                delivered = 0

            if delivered == 0:
                self._stop.wait(self._poll_interval)
        logger.info("Auth worker stopped")

    def stop(self) -> None:
        self._stop.set()


def main() -> None:
    """Console entry point: build components from Vault and run until signalled."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    components = build_auth_components()
    worker = AuthWorker(
        components.notification_worker,
        components.token_issuer,
        poll_interval_seconds=components.config.notification_poll_interval_seconds,
        sweep_interval_seconds=components.config.token_sweep_interval_seconds,
    )

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping auth worker")
        worker.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        worker.run()
    finally:
        components.valkey.close()
        components.postgres.close()


if __name__ == "__main__":
    main()
