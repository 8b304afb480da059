"""Security event logging for auth audit trail.

Append-only log to security_events table (no RLS).
Includes log rotation to archive old events to file.
"""

import json
import logging
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = "id, event_type, email, user_id, ip_address, user_agent, details, created_at"


class SecurityEvent(Enum):
    """Auth security event types."""

    USER_REGISTERED = "user_registered"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_BLOCKED_INACTIVE = "login_blocked_inactive"
    MFA_REQUIRED = "mfa_required"
    MFA_FAILED = "mfa_failed"
    MFA_LOGIN_SUCCESS = "mfa_login_success"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    TOKEN_REFRESH = "token_refresh"
    LOGOUT = "logout"
    VERIFICATION_EMAIL_SENT = "verification_email_sent"
    EMAIL_VERIFIED = "email_verified"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    RATE_LIMITED = "rate_limited"


class SecurityLogger:
    """Append-only security event logger with rotation."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        user_id: UUID | None = None,
        email: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event to database."""
        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                str(user_id) if user_id else None,
                ip_address,
                user_agent,
                Json(details) if details else None,
                now_utc(),
            ),
        )
        logger.info(f"Security event {event.value} (user={user_id})")

    def get_recent_events(
        self,
        email: str | None = None,
        user_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query recent security events with optional filters."""
        conditions = []
        params: list[Any] = []

        if email:
            conditions.append("email = %s")
            params.append(email)

        if user_id:
            conditions.append("user_id = %s")
            params.append(str(user_id))

        if event_type:
            conditions.append("event_type = %s")
            params.append(event_type.value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(limit)

        return self._db.execute(
            f"""SELECT {_EVENT_COLUMNS}
                FROM security_events
                WHERE {where_clause}
                ORDER BY created_at DESC
                LIMIT %s""",
            tuple(params),
        )

    def rotate_logs(self, older_than_days: int, output_path: Path) -> int:
        """Archive old events to a JSON lines file and delete them.

        Returns:
            Number of events archived and deleted
        """
        cutoff = now_utc() - timedelta(days=older_than_days)

        events = self._db.execute(
            f"""SELECT {_EVENT_COLUMNS}
                FROM security_events
                WHERE created_at < %s
                ORDER BY created_at ASC""",
            (cutoff,),
        )

        if not events:
            return 0

        with open(output_path, "a") as f:
            for event in events:
                record = {
                    "id": str(event["id"]),
                    "event_type": event["event_type"],
                    "email": event["email"],
                    "user_id": str(event["user_id"]) if event["user_id"] else None,
                    "ip_address": str(event["ip_address"]) if event["ip_address"] else None,
                    "user_agent": event["user_agent"],
                    "details": event["details"],
                    "created_at": event["created_at"].isoformat(),
                }
                f.write(json.dumps(record) + "\n")

        # Delete only what was archived; rows inserted meanwhile stay
        last_id = max(event["id"] for event in events)
        self._db.execute_returning(
            "DELETE FROM security_events WHERE created_at < %s AND id <= %s RETURNING id",
            (cutoff, last_id),
        )

        logger.info(f"Archived {len(events)} security events to {output_path}")
        return len(events)
