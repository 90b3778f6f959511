"""
Repository pattern for data access.

Handles user records and the append-only usage log.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from token_meter.core.errors import PersistenceError
from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp, utc_now
from .models import UsageLogEntry, User

logger = logging.getLogger(__name__)

_USER_COLUMNS = "id, external_id, username, first_name, last_name, created_at, last_active"

_USAGE_LOG_COLUMNS = """
    id, user_id, timestamp, input_tokens, output_tokens, total_tokens,
    message_preview, response_preview, model, success, funding_source
"""


def _row_to_user(row) -> User:
    return User(
        id=row[0],
        external_id=row[1],
        username=row[2] or "",
        first_name=row[3] or "",
        last_name=row[4] or "",
        created_at=from_db_timestamp(row[5]),
        last_active=from_db_timestamp(row[6])
    )


def _row_to_usage_log(row) -> UsageLogEntry:
    return UsageLogEntry(
        id=row[0],
        user_id=row[1],
        timestamp=from_db_timestamp(row[2]),
        input_tokens=row[3],
        output_tokens=row[4],
        total_tokens=row[5],
        message_preview=row[6] or "",
        response_preview=row[7] or "",
        model=row[8] or "",
        success=bool(row[9]),
        funding_source=row[10] or ""
    )


class UserRepository:
    """Repository for user records.

    Users are created on first contact and touched on every later one.
    This repository never deletes users.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = utc_now):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Source of the current time
        """
        self.db_path = db_path
        self.clock = clock

    def get_or_create_user(
        self,
        external_id: int,
        username: str = "",
        first_name: str = "",
        last_name: str = ""
    ) -> User:
        """Return the user for external_id, creating or touching the row.

        Existing users get their display attributes refreshed and
        last_active bumped to now.

        Args:
            external_id: Stable id assigned by the transport
            username: Current username
            first_name: Current first name
            last_name: Current last name

        Returns:
            The stored user after the create or touch

        Raises:
            PersistenceError: If the database operation fails
        """
        now = to_db_timestamp(self.clock())
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database: {e}") from e
        try:
            existed = conn.execute(
                "SELECT 1 FROM users WHERE external_id = ?", (external_id,)
            ).fetchone() is not None
            conn.execute("""
                INSERT INTO users (external_id, username, first_name, last_name, created_at, last_active)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (external_id) DO UPDATE
                SET username = excluded.username,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    last_active = excluded.last_active
            """, (external_id, username, first_name, last_name, now, now))
            conn.commit()
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE external_id = ?", (external_id,)
            ).fetchone()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to get or create user {external_id}: {e}") from e
        finally:
            conn.close()

        if not existed:
            logger.info("Created new user: external_id=%s, username=%s", external_id, username)
        return _row_to_user(row)

    def get_user(self, external_id: int) -> Optional[User]:
        """Look up a user without touching it.

        Args:
            external_id: Stable id assigned by the transport

        Returns:
            The user, or None if never seen
        """
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE external_id = ?", (external_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read user {external_id}: {e}") from e
        return _row_to_user(row) if row else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the users, usage_logs and subscriptions tables if missing.

    usage_logs is an append-only ledger. No UPDATE or DELETE operations
    are ever performed on it by this package.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id INTEGER UNIQUE NOT NULL,
                username TEXT,
                first_name TEXT,
                last_name TEXT,
                created_at TEXT NOT NULL,
                last_active TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_users_last_active ON users(last_active);

            CREATE TABLE IF NOT EXISTS usage_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                timestamp TEXT NOT NULL,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                message_preview TEXT,
                response_preview TEXT,
                model TEXT,
                success INTEGER NOT NULL DEFAULT 1,
                funding_source TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_usage_logs_user_timestamp ON usage_logs(user_id, timestamp);

            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                expires_at TEXT NOT NULL,
                tokens_granted INTEGER NOT NULL DEFAULT 0,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_subscriptions_expiry ON subscriptions(expires_at);
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_log(entry: UsageLogEntry, db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert a single entry into the append-only usage log.

    Args:
        entry: The attempt to record; a missing timestamp means now
        db_path: Path to SQLite database file

    Returns:
        The id of the new row
    """
    timestamp = entry.timestamp or utc_now()
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            INSERT INTO usage_logs
            (user_id, timestamp, input_tokens, output_tokens, total_tokens,
             message_preview, response_preview, model, success, funding_source)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.user_id,
            to_db_timestamp(timestamp),
            entry.input_tokens,
            entry.output_tokens,
            entry.total_tokens,
            entry.message_preview,
            entry.response_preview,
            entry.model,
            1 if entry.success else 0,
            entry.funding_source
        ))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def fetch_recent_usage_logs(
    user_id: Optional[int] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageLogEntry]:
    """Fetch recent usage log entries, optionally for a single user.

    Returns entries in reverse chronological order (newest first).

    Args:
        user_id: Optional internal user id filter
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of usage log entries ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_USAGE_LOG_COLUMNS} FROM usage_logs"
        params = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_usage_log(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def get_daily_usage(
    external_id: int,
    day: Optional[date] = None,
    db_path: str = DEFAULT_DB_PATH
) -> Dict[str, int]:
    """Summarize one user's successful requests on a UTC calendar day.

    Args:
        external_id: Stable id assigned by the transport
        day: Day to summarize, defaults to today (UTC)
        db_path: Path to SQLite database file

    Returns:
        Dictionary with request_count and total_tokens
    """
    day = day or utc_now().date()
    start = datetime(day.year, day.month, day.day)
    end = start + timedelta(days=1)

    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT COUNT(ul.id), COALESCE(SUM(ul.total_tokens), 0)
            FROM users u
            JOIN usage_logs ul ON u.id = ul.user_id
            WHERE u.external_id = ?
              AND ul.success = 1
              AND ul.timestamp >= ?
              AND ul.timestamp < ?
        """, (external_id, to_db_timestamp(start), to_db_timestamp(end))).fetchone()
        return {"request_count": row[0] or 0, "total_tokens": row[1] or 0}
    finally:
        conn.close()


def get_user_stats(external_id: int, db_path: str = DEFAULT_DB_PATH) -> Dict[str, int]:
    """Lifetime totals of a user's successful requests.

    Args:
        external_id: Stable id assigned by the transport
        db_path: Path to SQLite database file

    Returns:
        Dictionary with total_requests and total_tokens
    """
    conn = get_connection(db_path)
    try:
        row = conn.execute("""
            SELECT COUNT(ul.id), COALESCE(SUM(ul.total_tokens), 0)
            FROM users u
            LEFT JOIN usage_logs ul ON u.id = ul.user_id AND ul.success = 1
            WHERE u.external_id = ?
        """, (external_id,)).fetchone()
        return {"total_requests": row[0] or 0, "total_tokens": row[1] or 0}
    finally:
        conn.close()
