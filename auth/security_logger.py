"""Security event logging for the auth audit trail.

Every event goes to the `auth.security` logger. When a PostgresClient is
configured, events are also appended to the security_events table, and old
rows are archived to a JSON lines file during cleanup.
"""

import json
import logging
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

import psycopg2
from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

logger = logging.getLogger("auth.security")

# Events that warrant WARNING rather than INFO
_WARNING_EVENTS = frozenset(
    {
        "login_failed",
        "account_locked",
        "magic_link_failed",
        "magic_link_expired",
        "magic_link_already_used",
        "refresh_failed",
        "rate_limited",
    }
)


class SecurityEvent(Enum):
    """Auth security event types."""

    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    MAGIC_LINK_REQUESTED = "magic_link_requested"
    MAGIC_LINK_SENT = "magic_link_sent"
    MAGIC_LINK_VERIFIED = "magic_link_verified"
    MAGIC_LINK_FAILED = "magic_link_failed"
    MAGIC_LINK_EXPIRED = "magic_link_expired"
    MAGIC_LINK_ALREADY_USED = "magic_link_already_used"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_FAILED = "refresh_failed"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    RATE_LIMITED = "rate_limited"
    USER_CREATED = "user_created"


class SecurityLogger:
    """Append-only security event logger with rotation."""

    def __init__(self, postgres: PostgresClient | None = None):
        self._db = postgres

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log security event.

        A failed database write is logged and dropped: the audit table is
        best effort and must not turn a successful login into a failure.
        """
        level = logging.WARNING if event.value in _WARNING_EVENTS else logging.INFO
        logger.log(
            level,
            f"{event.value} email={email} user_id={user_id} ip={ip_address}"
            + (f" details={json.dumps(details, default=str)}" if details else ""),
        )

        if self._db is None:
            return

        try:
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
        except psycopg2.Error as e:
            logger.error(f"Failed to persist security event {event.value}: {e}")

    def rotate_logs(self, older_than_days: int, output_path: Path) -> int:
        """Archive old events to a JSON lines file and delete them from the table.

        Args:
            older_than_days: Archive events older than this many days
            output_path: File to append to

        Returns:
            Number of events archived and deleted
        """
        if self._db is None:
            return 0

        cutoff = now_utc() - timedelta(days=older_than_days)

        events = self._db.execute(
            """SELECT id, event_type, email, user_id, ip_address, user_agent, details, created_at
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

        self._db.execute_returning(
            "DELETE FROM security_events WHERE created_at < %s RETURNING id",
            (cutoff,),
        )

        return len(events)
