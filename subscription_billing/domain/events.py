"""
Domain Events - Immutable Facts About What Happened

Two vocabularies live here:

- ``PaymentEvent``: what a payment provider told us, already translated out of
  provider-specific names (Stripe, PayPal, bank gateway...). Commands carry it.
- ``DomainEvent`` subclasses: what the Subscription aggregate did in response.
  They are recorded by the aggregate and handed to a publisher after the
  aggregate is persisted.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PaymentEvent(str, Enum):
    """
    Provider-agnostic payment notifications.

    PAYMENT_SUCCEEDED: the period can be considered paid.
    PAYMENT_FAILED: the attempt failed; the subscription is suspended until
        a later attempt succeeds.
    PAYMENT_PENDING: awaiting customer or external action; neither outcome
        is known yet.
    """

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_PENDING = "payment_pending"


class DomainEvent(BaseModel):
    """
    Base class for all domain events.

    Events are IMMUTABLE and describe PAST FACTS.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    aggregate_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> str:
        return type(self).__name__


class PaymentRecorded(DomainEvent):
    """A resolved payment was appended to the subscription's history."""

    payment_id: str
    status: str
    amount: Decimal
    currency: str
    external_reference: str | None = None


class SubscriptionStatusChanged(DomainEvent):
    """The subscription moved between lifecycle states."""

    from_status: str
    to_status: str
    reason: str


class SubscriptionRenewed(DomainEvent):
    """The billing anchor date was reset for a new period."""

    previous_start_date: date
    new_start_date: date
