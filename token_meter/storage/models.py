"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """A person metered by the accounting subsystem."""
    id: int
    external_id: int
    username: str
    first_name: str
    last_name: str
    created_at: datetime
    last_active: datetime


@dataclass(frozen=True)
class Subscription:
    """Paid, time-bounded token balance for one user.

    At most one row exists per user; a renewal overwrites it in place.
    """
    id: int
    user_id: int
    expires_at: datetime
    tokens_granted: int
    tokens_used: int
    created_at: datetime
    updated_at: datetime

    @property
    def remaining_tokens(self) -> int:
        """Tokens left in the current period."""
        return self.tokens_granted - self.tokens_used

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class UsageLogEntry:
    """Immutable record of one rewrite attempt for auditing.

    Written for every attempt, successful or not. Once written,
    these records must never be modified.
    """
    user_id: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    message_preview: str
    response_preview: str
    model: str
    success: bool
    funding_source: str
    timestamp: Optional[datetime] = None
    id: Optional[int] = None
