"""
Free daily quota enforcement.

Per-user, per-day token and request counters kept in Redis. The calendar
day is part of each key, so yesterday's counters are never reset: they
simply stop being read and expire on their own.

Reservation Protocol:
1. check_and_reserve debits an estimate before the rewrite call
2. adjust_usage trues the counter up to the actual cost afterwards,
   or refunds the whole estimate when the call fails
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional

import redis

from .errors import ConnectivityError, QuotaExceededError

logger = logging.getLogger(__name__)

DEFAULT_COUNTER_TTL = timedelta(hours=48)

# Check and increment in one round trip so concurrent reservations
# can never push the counter past the ceiling.
# KEYS[1] tokens counter; ARGV[1] estimate, ARGV[2] ceiling, ARGV[3] ttl seconds
# Returns {allowed, counter value after the call}
_LUA_CHECK_AND_RESERVE = r"""
local current = tonumber(redis.call("GET", KEYS[1]) or "0")
local estimate = tonumber(ARGV[1])
local ceiling = tonumber(ARGV[2])
if current + estimate > ceiling then
  return {0, current}
end
local total = redis.call("INCRBY", KEYS[1], estimate)
redis.call("EXPIRE", KEYS[1], tonumber(ARGV[3]))
return {1, total}
"""


def local_now() -> datetime:
    """Naive local wall-clock time; the host timezone defines the day."""
    return datetime.now()


@dataclass(frozen=True)
class Reservation:
    """Result of a reservation attempt against the free pool.

    day names the counter the estimate was debited from, so the
    reconciliation lands there even after midnight has passed.
    """
    allowed: bool
    remaining: int
    day: Optional[str] = field(default=None, compare=False)


@dataclass(frozen=True)
class DailyUsage:
    """Today's free-pool counters for one user."""
    requests: int
    tokens_used: int
    remaining: int


class QuotaEnforcer:
    """Enforces the free daily token allowance.

    All state lives in the shared Redis store, so any number of worker
    processes observe one logical quota per user.
    """

    def __init__(
        self,
        client: redis.Redis,
        daily_limit: int,
        counter_ttl: timedelta = DEFAULT_COUNTER_TTL,
        key_prefix: str = "token_meter",
        clock: Callable[[], datetime] = local_now
    ):
        """Initialize the enforcer.

        Args:
            client: Redis client shared by all workers
            daily_limit: Token ceiling per user per calendar day
            counter_ttl: Lifetime of each counter key, re-armed on write
            key_prefix: Namespace for counter keys
            clock: Source of the current time. An aware value's zone defines
                the day; a naive value is read as host local time
        """
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        self.client = client
        self.daily_limit = daily_limit
        self.counter_ttl = counter_ttl
        self.key_prefix = key_prefix
        self.clock = clock
        self._check_and_reserve = client.register_script(_LUA_CHECK_AND_RESERVE)

    @property
    def _ttl_seconds(self) -> int:
        return int(self.counter_ttl.total_seconds())

    def current_day(self) -> str:
        return self.clock().strftime("%Y-%m-%d")

    def token_key(self, user_id: int, day: Optional[str] = None) -> str:
        return f"{self.key_prefix}:user:{user_id}:tokens:{day or self.current_day()}"

    def request_key(self, user_id: int, day: Optional[str] = None) -> str:
        return f"{self.key_prefix}:user:{user_id}:requests:{day or self.current_day()}"

    def _remaining(self, used: int) -> int:
        return max(self.daily_limit - used, 0)

    def ping(self) -> None:
        """Verify the counter store is reachable.

        Raises:
            ConnectivityError: If Redis cannot be reached
        """
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to connect to Redis: {e}") from e

    def check_and_reserve(self, user_id: int, estimated_tokens: int) -> Reservation:
        """Reserve estimated tokens from today's allowance if they fit.

        Args:
            user_id: External user id
            estimated_tokens: Provisional cost of the request

        Returns:
            Reservation with allowed flag and clamped remaining tokens.
            A rejected reservation leaves the counter untouched.

        Raises:
            ConnectivityError: If the counter store fails
        """
        day = self.current_day()
        try:
            allowed, value = self._check_and_reserve(
                keys=[self.token_key(user_id, day)],
                args=[estimated_tokens, self.daily_limit, self._ttl_seconds]
            )
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to reserve tokens: {e}") from e
        return Reservation(allowed=bool(int(allowed)), remaining=self._remaining(int(value)), day=day)

    def reserve_or_raise(self, user_id: int, estimated_tokens: int) -> Reservation:
        """Like check_and_reserve, but raise when the allowance is exhausted.

        Raises:
            QuotaExceededError: If the estimate does not fit today's allowance
            ConnectivityError: If the counter store fails
        """
        reservation = self.check_and_reserve(user_id, estimated_tokens)
        if not reservation.allowed:
            raise QuotaExceededError(
                f"Daily limit of {self.daily_limit} tokens reached for user {user_id}",
                remaining=reservation.remaining
            )
        return reservation

    def adjust_usage(self, user_id: int, delta: int, day: Optional[str] = None) -> int:
        """Apply a signed correction to a day's token counter.

        Args:
            user_id: External user id
            delta: actual - estimate for a true-up, -estimate for a refund
            day: Day of the reservation being settled; defaults to today

        Returns:
            Counter value after the adjustment

        Raises:
            ConnectivityError: If the counter store fails
        """
        key = self.token_key(user_id, day)
        try:
            pipe = self.client.pipeline()
            pipe.incrby(key, delta)
            pipe.expire(key, self._ttl_seconds)
            total, _ = pipe.execute()
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to adjust token usage: {e}") from e
        return int(total)

    def increment_requests(self, user_id: int) -> int:
        """Bump today's informational request counter.

        Never consulted by enforcement.
        """
        key = self.request_key(user_id)
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, self._ttl_seconds)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to increment request count: {e}") from e
        return int(count)

    def get_usage(self, user_id: int) -> DailyUsage:
        """Read today's counters; missing keys read as zero.

        Raises:
            ConnectivityError: If the counter store fails
        """
        try:
            tokens, requests = self.client.mget(self.token_key(user_id), self.request_key(user_id))
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to get usage: {e}") from e
        tokens_used = int(tokens or 0)
        return DailyUsage(
            requests=int(requests or 0),
            tokens_used=tokens_used,
            remaining=self._remaining(tokens_used)
        )

    def reset_usage(self, user_id: int) -> None:
        """Drop today's counters for a user (admin use)."""
        try:
            self.client.delete(self.token_key(user_id), self.request_key(user_id))
        except redis.RedisError as e:
            raise ConnectivityError(f"Failed to reset usage: {e}") from e
        logger.info("Reset usage for user %s", user_id)

    def get_time_until_reset(self) -> timedelta:
        """Time left until the next calendar-day boundary."""
        now = self.clock()
        # Resolve midnight in the zone's own rules, then compare in UTC so a
        # daylight-saving change during the day is counted.
        tomorrow = datetime.combine(now.date() + timedelta(days=1), time(0), tzinfo=now.tzinfo)
        return tomorrow.astimezone(timezone.utc) - now.astimezone(timezone.utc)
