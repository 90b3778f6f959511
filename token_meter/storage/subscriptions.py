"""
Subscription ledger.

Persistent per-user token balances with an expiry. The balance can only
be drawn down through a single conditional UPDATE, so tokens_used never
exceeds tokens_granted no matter how many writers race.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from token_meter.core.errors import PersistenceError
from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp, utc_now
from .models import Subscription

logger = logging.getLogger(__name__)

_SUBSCRIPTION_COLUMNS = "id, user_id, expires_at, tokens_granted, tokens_used, created_at, updated_at"


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row[0],
        user_id=row[1],
        expires_at=from_db_timestamp(row[2]),
        tokens_granted=row[3],
        tokens_used=row[4],
        created_at=from_db_timestamp(row[5]),
        updated_at=from_db_timestamp(row[6])
    )


class SubscriptionLedger:
    """Ledger of paid subscription balances.

    A purchase replaces the current period wholesale; it never tops up.
    Expired rows stay in place and are simply ignored until renewed.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = utc_now):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            clock: Source of the current time
        """
        self.db_path = db_path
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database: {e}") from e

    def upsert_subscription(self, user_id: int, tokens_granted: int, duration: timedelta) -> Subscription:
        """Create or renew the subscription of a user.

        Renewal resets tokens_used to 0 and overwrites tokens_granted and
        expires_at, whatever the previous state was.

        Args:
            user_id: Internal user id
            tokens_granted: Size of the new period's balance
            duration: Length of the new period, counted from now

        Returns:
            The subscription as stored after the write

        Raises:
            ValueError: If tokens_granted is negative or duration not positive
            PersistenceError: If the database operation fails
        """
        if tokens_granted < 0:
            raise ValueError("tokens_granted must be >= 0")
        if duration <= timedelta(0):
            raise ValueError("duration must be positive")

        now = self.clock()
        expires_at = to_db_timestamp(now + duration)
        stamp = to_db_timestamp(now)

        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO subscriptions
                (user_id, expires_at, tokens_granted, tokens_used, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT (user_id) DO UPDATE
                SET expires_at = excluded.expires_at,
                    tokens_granted = excluded.tokens_granted,
                    tokens_used = 0,
                    updated_at = excluded.updated_at
            """, (user_id, expires_at, tokens_granted, stamp, stamp))
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE user_id = ?", (user_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to upsert subscription for user {user_id}: {e}") from e
        finally:
            conn.close()

        logger.info(
            "Subscription for user %s set to %d tokens until %s",
            user_id, tokens_granted, expires_at
        )
        return _row_to_subscription(row)

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        """Return the subscription row of a user whether or not it has expired."""
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE user_id = ?", (user_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read subscription for user {user_id}: {e}") from e
        finally:
            conn.close()
        return _row_to_subscription(row) if row else None

    def get_active_subscription(self, user_id: int) -> Optional[Subscription]:
        """Return the subscription only if it has not expired.

        An expired row yields None even when balance remains.

        Args:
            user_id: Internal user id

        Returns:
            The active subscription, or None

        Raises:
            PersistenceError: If the database operation fails
        """
        now = to_db_timestamp(self.clock())
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions "
                "WHERE user_id = ? AND expires_at > ?",
                (user_id, now)
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read subscription for user {user_id}: {e}") from e
        finally:
            conn.close()
        return _row_to_subscription(row) if row else None

    def consume_subscription_tokens(self, user_id: int, tokens: int) -> Tuple[Optional[Subscription], bool]:
        """Atomically deduct tokens from an active subscription.

        The deduction happens only if the subscription is unexpired and
        tokens_used + tokens <= tokens_granted, evaluated inside a single
        UPDATE. No partial deduction is ever made.

        Args:
            user_id: Internal user id
            tokens: Actual tokens to deduct

        Returns:
            (updated subscription, True) on success, (None, False) when the
            subscription is missing, expired or short of balance

        Raises:
            ValueError: If tokens is negative
            PersistenceError: If the database operation fails
        """
        if tokens < 0:
            raise ValueError("tokens must be >= 0")

        now = to_db_timestamp(self.clock())
        conn = self._connect()
        try:
            cursor = conn.execute("""
                UPDATE subscriptions
                SET tokens_used = tokens_used + ?, updated_at = ?
                WHERE user_id = ?
                  AND expires_at > ?
                  AND tokens_used + ? <= tokens_granted
            """, (tokens, now, user_id, now, tokens))
            if cursor.rowcount != 1:
                conn.rollback()
                return None, False
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE user_id = ?", (user_id,)
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to consume subscription tokens for user {user_id}: {e}") from e
        finally:
            conn.close()

        return _row_to_subscription(row), True
