"""
Per-request usage accounting.

Decides which quota pool funds each rewrite request, reserves or checks
the balance, makes the rewrite call and reconciles the estimate against
the measured cost.

Request Lifecycle:
1. START - resolve (create or touch) the user
2. SOURCE_RESOLVED - pick subscription or free pool for the estimate
3. FUNDED - free pool reserved, or subscription balance checked
4. CALLED - rewrite call returned
5. RECONCILED - free pool trued up, or subscription charged the actual cost
6. LOGGED - usage log entry written
7. DONE

REJECTED (quota exhausted) and FAILED (call or store failure) end a
request early. Nothing is retried.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

import redis

from token_meter.config.loader import Settings
from token_meter.sdk.rewrite_client import OpenAIRewriter, RewriteResult
from token_meter.storage.models import Subscription, UsageLogEntry, User
from token_meter.storage.repository import UserRepository, initialize_schema
from token_meter.storage.subscriptions import SubscriptionLedger
from .errors import (
    ConnectivityError,
    ExternalCallError,
    PersistenceError,
    QuotaExceededError,
    TokenMeterError,
)
from .plans import calculate_monthly_tokens
from .quota import DailyUsage, QuotaEnforcer
from .recorder import UsageRecorder
from .token_counter import truncate_preview

logger = logging.getLogger(__name__)

RewriteFn = Callable[[str, float], RewriteResult]

APOLOGY_MESSAGE = "Sorry, I couldn't process your request right now. Please try again later."

INSUFFICIENT_BALANCE_WARNING = (
    "Your subscription tokens were insufficient for this request. "
    "Please subscribe again to refresh your pool."
)


class FundingSource(Enum):
    """Pool a request draws its tokens from."""
    FREE = "free"
    SUBSCRIPTION = "subscription"
    NONE = "none"


class RequestState(Enum):
    START = "start"
    SOURCE_RESOLVED = "source_resolved"
    FUNDED = "funded"
    CALLED = "called"
    RECONCILED = "reconciled"
    LOGGED = "logged"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class RewriteRequest:
    """One inbound message to be rewritten on behalf of a user."""
    user_id: int
    text: str
    username: str = ""
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class RequestOutcome:
    """What the transport should tell the user.

    allowed is False when the request was never admitted: the free pool
    rejected it, or a store failed before any pool was chosen.
    """
    allowed: bool
    reply: str
    funded_by: FundingSource
    state: RequestState
    tokens_used: int = 0
    warning: Optional[str] = None


@dataclass(frozen=True)
class UsageStatus:
    """Snapshot of a user's free-pool and subscription standing."""
    daily: DailyUsage
    daily_limit: int
    time_until_reset: timedelta
    subscription: Optional[Subscription]


class _RequestContext:
    """Mutable bookkeeping for one request as it moves through its states."""

    def __init__(self, request: RewriteRequest):
        self.request = request
        self.state = RequestState.START
        self.user: Optional[User] = None
        self.funded_by = FundingSource.NONE
        self.reserved_day: Optional[str] = None

    def advance(self, state: RequestState) -> None:
        logger.debug("User %s: %s -> %s", self.request.user_id, self.state.value, state.value)
        self.state = state


def format_duration(duration: timedelta) -> str:
    total_minutes = int(duration.total_seconds()) // 60
    return f"{total_minutes // 60}h {total_minutes % 60}m"


class AccountingOrchestrator:
    """Runs the accounting state machine for each rewrite request.

    Holds no per-request state and no lock; correctness under concurrent
    requests rests on the atomic primitives of the quota store and the
    subscription ledger.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserRepository,
        quota: QuotaEnforcer,
        ledger: SubscriptionLedger,
        recorder: UsageRecorder,
        rewrite: RewriteFn
    ):
        self.settings = settings
        self.users = users
        self.quota = quota
        self.ledger = ledger
        self.recorder = recorder
        self.rewrite = rewrite

    def handle(self, request: RewriteRequest) -> RequestOutcome:
        """Account for and execute one rewrite request.

        Never raises for accounting failures: every error is turned into
        a quota message or a generic apology.

        Args:
            request: The inbound message

        Returns:
            RequestOutcome describing the reply and the funding pool
        """
        ctx = _RequestContext(request)
        try:
            return self._process(ctx)
        except TokenMeterError as e:
            logger.error("Request from user %s failed in state %s: %s", request.user_id, ctx.state.value, e)
            ctx.advance(RequestState.FAILED)
            return RequestOutcome(
                allowed=ctx.funded_by != FundingSource.NONE,
                reply=APOLOGY_MESSAGE,
                funded_by=ctx.funded_by,
                state=ctx.state
            )

    def _process(self, ctx: _RequestContext) -> RequestOutcome:
        request = ctx.request
        ctx.user = self.users.get_or_create_user(
            request.user_id, request.username, request.first_name, request.last_name
        )
        estimate = self.settings.estimated_tokens_per_request

        subscription = self._active_subscription(ctx.user)
        ctx.advance(RequestState.SOURCE_RESOLVED)
        if subscription is not None and subscription.remaining_tokens >= estimate:
            # Subscription tokens are only charged for the actual cost after the call.
            ctx.funded_by = FundingSource.SUBSCRIPTION
        else:
            try:
                reservation = self.quota.reserve_or_raise(request.user_id, estimate)
            except QuotaExceededError as e:
                ctx.advance(RequestState.REJECTED)
                logger.info("User %s hit the daily limit (%d remaining)", request.user_id, e.remaining)
                return RequestOutcome(
                    allowed=False,
                    reply=self.quota_exceeded_message(e.remaining),
                    funded_by=FundingSource.NONE,
                    state=ctx.state
                )
            ctx.reserved_day = reservation.day
            ctx.funded_by = FundingSource.FREE
        ctx.advance(RequestState.FUNDED)

        try:
            result = self._call_rewrite(request.text)
        except ExternalCallError as e:
            return self._fail(ctx, estimate, e)
        ctx.advance(RequestState.CALLED)

        actual = result.usage.total_tokens
        warning = self._reconcile(ctx, estimate, actual)
        ctx.advance(RequestState.RECONCILED)

        self._safely("increment request count", self.quota.increment_requests, request.user_id)
        self.recorder.append(UsageLogEntry(
            user_id=ctx.user.id,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            total_tokens=actual,
            message_preview=truncate_preview(request.text, self.settings.preview_length),
            response_preview=truncate_preview(result.text, self.settings.preview_length),
            model=self.settings.model,
            success=True,
            funding_source=ctx.funded_by.value
        ))
        ctx.advance(RequestState.LOGGED)

        logger.info(
            "User %s (%s) used %d tokens (estimated: %d) from %s pool",
            request.user_id, request.username, actual, estimate, ctx.funded_by.value
        )

        reply = result.text
        if warning:
            reply = f"{reply}\n\n{warning}"
        ctx.advance(RequestState.DONE)
        return RequestOutcome(
            allowed=True,
            reply=reply,
            funded_by=ctx.funded_by,
            state=ctx.state,
            tokens_used=actual,
            warning=warning
        )

    def _active_subscription(self, user: User) -> Optional[Subscription]:
        try:
            return self.ledger.get_active_subscription(user.id)
        except PersistenceError as e:
            logger.warning("Error reading subscription for user %s: %s", user.external_id, e)
            return None

    def _call_rewrite(self, text: str) -> RewriteResult:
        try:
            return self.rewrite(text, self.settings.rewrite_timeout_seconds)
        except ExternalCallError:
            raise
        except Exception as e:
            # The collaborator is opaque; anything it raises fails this request only.
            raise ExternalCallError(f"Rewrite call failed: {e}") from e

    def _fail(self, ctx: _RequestContext, estimate: int, error: ExternalCallError) -> RequestOutcome:
        request = ctx.request
        logger.error("Error calling rewrite for user %s: %s", request.user_id, error)

        if ctx.funded_by == FundingSource.FREE:
            self._safely(
                "refund tokens", self.quota.adjust_usage, request.user_id, -estimate, ctx.reserved_day
            )

        self.recorder.append(UsageLogEntry(
            user_id=ctx.user.id,
            input_tokens=0,
            output_tokens=0,
            total_tokens=0,
            message_preview=truncate_preview(request.text, self.settings.preview_length),
            response_preview="",
            model=self.settings.model,
            success=False,
            funding_source=ctx.funded_by.value
        ))
        ctx.advance(RequestState.FAILED)
        return RequestOutcome(
            allowed=True,
            reply=APOLOGY_MESSAGE,
            funded_by=ctx.funded_by,
            state=ctx.state
        )

    def _reconcile(self, ctx: _RequestContext, estimate: int, actual: int) -> Optional[str]:
        """Settle the request against its pool; return a warning for the user if any."""
        user_id = ctx.request.user_id
        if ctx.funded_by == FundingSource.FREE:
            self._safely(
                "adjust token usage", self.quota.adjust_usage, user_id, actual - estimate, ctx.reserved_day
            )
            return None

        try:
            _, consumed = self.ledger.consume_subscription_tokens(ctx.user.id, actual)
        except PersistenceError as e:
            logger.error("Error consuming subscription tokens for user %s: %s", user_id, e)
            return None
        if not consumed:
            # Delivered but unpaid: the balance ran out after the funding decision.
            logger.warning(
                "Subscription of user %s could not cover %d tokens; reply delivered anyway",
                user_id, actual
            )
            return INSUFFICIENT_BALANCE_WARNING
        return None

    def _safely(self, action: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except TokenMeterError as e:
            logger.error("Failed to %s for user %s: %s", action, args[0], e)

    def quota_exceeded_message(self, remaining: int) -> str:
        """User-facing text for a rejected free-pool reservation."""
        return (
            "Daily limit reached!\n\n"
            f"You've used your daily allocation of {self.settings.daily_token_limit} tokens.\n"
            f"Remaining: {remaining} tokens\n\n"
            f"Your limit will reset in {format_duration(self.quota.get_time_until_reset())}\n"
            "Check your usage or subscribe for a bigger pool."
        )

    def usage_status(self, external_id: int) -> UsageStatus:
        """Today's usage and any active subscription of a user.

        Raises:
            ConnectivityError: If the counter store fails
            PersistenceError: If the subscription cannot be read
        """
        daily = self.quota.get_usage(external_id)
        subscription = None
        user = self.users.get_user(external_id)
        if user is not None:
            subscription = self.ledger.get_active_subscription(user.id)
        return UsageStatus(
            daily=daily,
            daily_limit=self.settings.daily_token_limit,
            time_until_reset=self.quota.get_time_until_reset(),
            subscription=subscription
        )

    def record_purchase(
        self,
        external_id: int,
        username: str = "",
        first_name: str = "",
        last_name: str = ""
    ) -> Subscription:
        """Grant a fresh subscription period after a successful payment.

        Replaces any current period; unused tokens do not carry over.

        Raises:
            PersistenceError: If the user or subscription cannot be written
        """
        user = self.users.get_or_create_user(external_id, username, first_name, last_name)
        plan = self.settings.plan
        return self.ledger.upsert_subscription(user.id, calculate_monthly_tokens(plan), plan.duration)


def build_orchestrator(
    settings: Settings,
    rewrite: Optional[RewriteFn] = None,
    redis_client: Optional[redis.Redis] = None
) -> AccountingOrchestrator:
    """Wire an orchestrator to its stores, failing fast if they are unreachable.

    Args:
        settings: Validated settings
        rewrite: Rewrite collaborator, an OpenAIRewriter by default
        redis_client: Preconfigured Redis client, created from
            settings.redis_url when omitted

    Returns:
        A ready AccountingOrchestrator

    Raises:
        ConnectivityError: If Redis or the database cannot be reached
    """
    client = redis_client or redis.Redis.from_url(settings.redis_url)
    quota = QuotaEnforcer(
        client,
        daily_limit=settings.daily_token_limit,
        counter_ttl=settings.counter_ttl,
        key_prefix=settings.key_prefix
    )
    quota.ping()
    logger.info("Successfully connected to Redis")

    try:
        initialize_schema(settings.database_path)
    except sqlite3.Error as e:
        raise ConnectivityError(f"Failed to open database {settings.database_path}: {e}") from e

    return AccountingOrchestrator(
        settings=settings,
        users=UserRepository(settings.database_path),
        quota=quota,
        ledger=SubscriptionLedger(settings.database_path),
        recorder=UsageRecorder(settings.database_path),
        rewrite=rewrite or OpenAIRewriter(settings.model)
    )
