"""
Domain Services - read-side payment aggregation and renewal decisions.

Neither service persists anything. PaymentCalculationService reads payment
history through a query port (histories can be large, so it does not rely on
the in-memory aggregate); SubscriptionRenewalService decides whether and how a
subscription renews and leaves persistence to its caller.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date
from typing import Protocol

import structlog

from subscription_billing.domain.aggregates import (
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from subscription_billing.domain.exceptions import StateConflictError
from subscription_billing.domain.value_objects import Money

logger = structlog.get_logger(__name__)


class PaymentQueryPort(Protocol):
    """Read access to a subscription's payment history."""

    async def find_payments(self, subscription_id: str) -> Sequence[Payment]:
        ...


class PaymentCalculationService:
    """Pure folds over a subscription's payments; an empty history is fine."""

    def __init__(self, payments: PaymentQueryPort):
        self.payments = payments

    async def calculate_total_paid(self, subscription: Subscription) -> Money:
        return await self._sum_by_status(subscription, PaymentStatus.SUCCEEDED)

    async def calculate_pending_amount(self, subscription: Subscription) -> Money:
        return await self._sum_by_status(subscription, PaymentStatus.PENDING)

    async def is_fully_paid(self, subscription: Subscription) -> bool:
        """True iff every payment SUCCEEDED (vacuously true when there are none)."""
        payments = await self.payments.find_payments(subscription.subscription_id)
        return all(p.status is PaymentStatus.SUCCEEDED for p in payments)

    async def _sum_by_status(
        self, subscription: Subscription, status: PaymentStatus
    ) -> Money:
        payments = await self.payments.find_payments(subscription.subscription_id)
        total = Money.zero(subscription.currency)
        for payment in payments:
            if payment.status is status:
                total = total.add(payment.amount)
        return total


class SubscriptionRenewalService:
    """
    Renewal decisions for expired subscriptions.

    Typical flow for a periodic renewal job:
    1. should_renew(subscription)
    2. create_renewal_payment(subscription) → charge it with the provider
    3. process_renewal(subscription) → new billing period
    4. the provider's answer arrives later as a payment event
    """

    def __init__(
        self,
        calculation: PaymentCalculationService,
        clock: Callable[[], date] = date.today,
    ):
        self.calculation = calculation
        self.clock = clock

    def should_renew(self, subscription: Subscription) -> bool:
        return subscription.is_expired(self.clock())

    async def create_renewal_payment(self, subscription: Subscription) -> Payment:
        if not self.should_renew(subscription):
            raise StateConflictError(
                f"Subscription {subscription.subscription_id} has not expired; "
                "nothing to renew",
                subscription_id=subscription.subscription_id,
            )

        amount = await self.calculation.calculate_pending_amount(subscription)
        payment = Payment.create(
            occurred_on=self.clock(),
            user_id=subscription.user_id,
            subscription_id=subscription.subscription_id,
            amount=amount,
        )

        logger.info(
            "renewal.payment_created",
            subscription_id=subscription.subscription_id,
            payment_id=payment.payment_id,
            amount=str(amount),
        )
        return payment

    def process_renewal(self, subscription: Subscription) -> None:
        """
        Reset the billing anchor to today and make sure the subscription is ACTIVE.

        Blocked while any payment is still in flight. Does not create or
        apply a payment.
        """
        if subscription.has_pending_payments():
            raise StateConflictError(
                f"Subscription {subscription.subscription_id} has a payment in flight",
                subscription_id=subscription.subscription_id,
            )

        subscription.reset_billing_anchor(self.clock())
        if subscription.status is not SubscriptionStatus.ACTIVE:
            subscription.activate_subscription()

        logger.info(
            "renewal.processed",
            subscription_id=subscription.subscription_id,
            start_date=subscription.start_date.isoformat(),
        )
