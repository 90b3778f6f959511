"""
Tests for the subscription ledger.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from token_meter.core.errors import PersistenceError
from token_meter.storage.repository import UserRepository
from token_meter.storage.subscriptions import SubscriptionLedger

MONTH = timedelta(days=30)


@pytest.fixture
def ledger(db_path, clock):
    return SubscriptionLedger(db_path, clock=clock)


@pytest.fixture
def user(db_path, clock):
    return UserRepository(db_path, clock=clock).get_or_create_user(1001, "alice")


class TestUpsertSubscription:
    """Test purchase and renewal semantics."""

    def test_creates_subscription(self, ledger, user, clock):
        subscription = ledger.upsert_subscription(user.id, 1000, MONTH)

        assert subscription.user_id == user.id
        assert subscription.tokens_granted == 1000
        assert subscription.tokens_used == 0
        assert subscription.remaining_tokens == 1000
        assert subscription.expires_at == clock.now + MONTH

    def test_renewal_replaces_period(self, ledger, user, clock):
        """Renewal resets usage and overwrites grant and expiry; it does not add."""
        first = ledger.upsert_subscription(user.id, 1000, MONTH)
        ledger.consume_subscription_tokens(user.id, 700)

        clock.advance(timedelta(days=10))
        renewed = ledger.upsert_subscription(user.id, 800, MONTH)

        assert renewed.id == first.id
        assert renewed.tokens_used == 0
        assert renewed.tokens_granted == 800
        assert renewed.expires_at == clock.now + MONTH
        assert renewed.created_at == first.created_at

    def test_renewal_of_expired_subscription(self, ledger, user, clock):
        ledger.upsert_subscription(user.id, 1000, timedelta(days=1))
        ledger.consume_subscription_tokens(user.id, 400)
        clock.advance(timedelta(days=2))

        renewed = ledger.upsert_subscription(user.id, 1000, MONTH)

        assert renewed.tokens_used == 0
        assert ledger.get_active_subscription(user.id) == renewed

    def test_rejects_invalid_arguments(self, ledger, user):
        with pytest.raises(ValueError, match="tokens_granted"):
            ledger.upsert_subscription(user.id, -1, MONTH)
        with pytest.raises(ValueError, match="duration"):
            ledger.upsert_subscription(user.id, 1000, timedelta(0))


class TestGetActiveSubscription:
    """Test expiry handling on reads."""

    def test_none_without_subscription(self, ledger, user):
        assert ledger.get_active_subscription(user.id) is None

    def test_returns_active(self, ledger, user):
        created = ledger.upsert_subscription(user.id, 1000, MONTH)

        assert ledger.get_active_subscription(user.id) == created

    def test_expired_with_balance_is_none(self, ledger, user, clock):
        """Expiry hides the row even with tokens left, without deleting it."""
        ledger.upsert_subscription(user.id, 1000, MONTH)
        ledger.consume_subscription_tokens(user.id, 100)

        clock.advance(MONTH)

        assert ledger.get_active_subscription(user.id) is None
        stored = ledger.get_subscription(user.id)
        assert stored is not None
        assert stored.tokens_used == 100


class TestConsumeSubscriptionTokens:
    """Test the atomic conditional deduction."""

    def test_consume_success(self, ledger, user):
        ledger.upsert_subscription(user.id, 1000, MONTH)

        subscription, consumed = ledger.consume_subscription_tokens(user.id, 150)

        assert consumed is True
        assert subscription.tokens_used == 150
        assert subscription.remaining_tokens == 850

    def test_consume_to_exact_balance(self, ledger, user):
        ledger.upsert_subscription(user.id, 1000, MONTH)

        subscription, consumed = ledger.consume_subscription_tokens(user.id, 1000)

        assert consumed is True
        assert subscription.remaining_tokens == 0

    def test_insufficient_balance_leaves_row_untouched(self, ledger, user):
        """900/1000 used and 150 requested fails with no partial deduction."""
        ledger.upsert_subscription(user.id, 1000, MONTH)
        ledger.consume_subscription_tokens(user.id, 900)

        subscription, consumed = ledger.consume_subscription_tokens(user.id, 150)

        assert consumed is False
        assert subscription is None
        stored = ledger.get_active_subscription(user.id)
        assert stored.tokens_used == 900
        assert stored.tokens_granted == 1000

    def test_expired_subscription_cannot_be_consumed(self, ledger, user, clock):
        ledger.upsert_subscription(user.id, 1000, MONTH)
        clock.advance(MONTH + timedelta(seconds=1))

        subscription, consumed = ledger.consume_subscription_tokens(user.id, 10)

        assert consumed is False
        assert ledger.get_subscription(user.id).tokens_used == 0

    def test_missing_subscription(self, ledger, user):
        assert ledger.consume_subscription_tokens(user.id, 10) == (None, False)

    def test_negative_tokens_rejected(self, ledger, user):
        ledger.upsert_subscription(user.id, 1000, MONTH)

        with pytest.raises(ValueError):
            ledger.consume_subscription_tokens(user.id, -10)

    def test_concurrent_consumes_never_exceed_grant(self, db_path, user):
        """Parallel deductions stop exactly at tokens_granted."""
        SubscriptionLedger(db_path).upsert_subscription(user.id, 1000, MONTH)

        def consume(_):
            return SubscriptionLedger(db_path).consume_subscription_tokens(user.id, 100)[1]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(consume, range(25)))

        assert results.count(True) == 10
        final = SubscriptionLedger(db_path).get_active_subscription(user.id)
        assert final.tokens_used == 1000
        assert final.tokens_used <= final.tokens_granted


class TestLedgerFailures:
    """Test that database failures surface as PersistenceError."""

    def test_missing_schema(self, tmp_path):
        ledger = SubscriptionLedger(str(tmp_path / "empty.db"))

        with pytest.raises(PersistenceError):
            ledger.get_active_subscription(1)

    def test_unreachable_database(self, tmp_path):
        ledger = SubscriptionLedger(str(tmp_path / "missing" / "db.sqlite"))

        with pytest.raises(PersistenceError):
            ledger.consume_subscription_tokens(1, 10)
