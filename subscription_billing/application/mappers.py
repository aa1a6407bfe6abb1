"""Pure mapping from commands to domain objects."""

from __future__ import annotations

from datetime import date

from subscription_billing.application.commands import PaymentEventCommand
from subscription_billing.domain.aggregates import Payment, Subscription


def to_payment(
    command: PaymentEventCommand, subscription: Subscription, today: date
) -> Payment:
    """Build the PENDING payment a command describes, dated ``today``."""
    return Payment.create(
        occurred_on=today,
        user_id=command.user_id or subscription.user_id,
        subscription_id=subscription.subscription_id,
        amount=command.amount,
        external_reference=command.external_payment_id,
    )
