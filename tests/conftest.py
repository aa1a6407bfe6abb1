"""
Pytest configuration and fixtures.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from subscription_billing.config import Settings
from subscription_billing.domain.aggregates import Subscription, SubscriptionStatus
from subscription_billing.domain.value_objects import (
    Currency,
    PaymentMethod,
    PaymentMethodType,
    SubscriptionType,
)

TODAY = date(2024, 3, 15)


class FakeClock:
    """Controllable UTC clock for ledger claim expiry."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        app_name="subscription-billing-test",
        app_env="test",
        log_level="DEBUG",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/1",
        stripe_webhook_secret="whsec_test_fake_secret",
        subscription_save_max_attempts=3,
        webhook_claim_ttl_seconds=300,
        lock_acquire_timeout=1.0,
        redis_lock_timeout=30,
    )


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def card() -> PaymentMethod:
    return PaymentMethod(
        type=PaymentMethodType.CREDIT_CARD,
        external_token="pm_card_visa",
        last_four_digits="4242",
    )


@pytest.fixture
def make_subscription(card, today):
    """Factory for subscriptions in any stored status."""

    def _make(
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        type: SubscriptionType = SubscriptionType.MONTHLY,
        start_date: date | None = None,
        currency: Currency = Currency.USD,
        subscription_id: str = "sub_1",
        user_id: str = "user_1",
        payments=(),
    ) -> Subscription:
        return Subscription.rehydrate(
            subscription_id=subscription_id,
            user_id=user_id,
            type=type,
            payment_method=card,
            status=status,
            start_date=start_date or today,
            payments=payments,
            currency=currency,
        )

    return _make
