"""
Usage recorder.

Append-only audit log of every rewrite attempt. Writes are best-effort:
a failed append is logged and reported, never raised.
"""

import logging
import sqlite3

from token_meter.storage.db import DEFAULT_DB_PATH
from token_meter.storage.models import UsageLogEntry
from token_meter.storage.repository import insert_usage_log

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Fire-and-forget writer for usage log entries."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entry: UsageLogEntry) -> bool:
        """Append one entry to the usage log.

        Args:
            entry: The attempt to record

        Returns:
            True if the row was written, False if the write failed
        """
        try:
            insert_usage_log(entry, self.db_path)
        except sqlite3.Error as e:
            logger.error(
                "Failed to log usage for user %s (success=%s): %s",
                entry.user_id, entry.success, e
            )
            return False
        return True
