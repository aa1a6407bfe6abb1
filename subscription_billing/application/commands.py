"""Commands accepted by the application layer."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from subscription_billing.domain.events import PaymentEvent
from subscription_billing.domain.value_objects import Money


class PaymentEventCommand(BaseModel):
    """
    A provider notification expressed in domain terms.

    Either ``subscription_id`` or ``user_id`` must be present so the event can
    be correlated to a subscription. ``amount`` may be None for
    PAYMENT_PENDING. ``external_payment_id`` is the provider's event id and
    the idempotency key for the whole pipeline.
    """

    model_config = ConfigDict(frozen=True)

    external_payment_id: str
    event: PaymentEvent
    subscription_id: str | None = None
    user_id: str | None = None
    amount: Money | None = None
    event_occurred_at: datetime | None = None
