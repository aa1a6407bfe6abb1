"""
Output ports consumed by the application layer.

Adapters live in ``subscription_billing.infrastructure``: in-memory versions
for tests and local runs, SQLAlchemy for the durable webhook ledger, Redis for
the cross-process subscription lock.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict

from subscription_billing.domain.aggregates import Subscription
from subscription_billing.domain.events import DomainEvent


class WebhookEventStatus(str, Enum):
    """
    Ledger record lifecycle.

    RECEIVED → PROCESSED
        ↓
      FAILED → RECEIVED (re-claimed by a redelivery)
    """

    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class WebhookEventRecord(BaseModel):
    """Durable proof that an external event was seen (and maybe applied)."""

    model_config = ConfigDict(frozen=True)

    external_event_id: str
    event_type: str
    raw_payload: str | None = None
    received_at: datetime
    processed_at: datetime | None = None
    status: WebhookEventStatus = WebhookEventStatus.RECEIVED
    attempts: int = 1
    last_error: str | None = None

    @property
    def is_processed(self) -> bool:
        return self.status is WebhookEventStatus.PROCESSED


class LedgerInsertResult(str, Enum):
    """Outcome of claiming an event id in the ledger."""

    RECEIVED = "received"  # caller owns the event and must apply it
    ALREADY_EXISTS = "already_exists"  # another delivery owns it or finished it


class SubscriptionRepository(Protocol):
    """Persistence of the Subscription aggregate (with its payments)."""

    async def save(self, subscription: Subscription) -> Subscription:
        """
        Persist the aggregate.

        Raises:
            ConcurrencyError: stored version differs from ``subscription.version``
        """
        ...

    async def find_by_id(self, subscription_id: str) -> Subscription | None:
        ...

    async def find_by_user_id(self, user_id: str) -> Subscription | None:
        ...


class WebhookEventLedger(Protocol):
    """Idempotency ledger keyed by the provider's event id."""

    async def exists_processed(self, event_id: str) -> bool:
        ...

    async def insert_received(
        self, event_id: str, event_type: str, payload: str | None = None
    ) -> LedgerInsertResult:
        """
        Atomically claim ``event_id``.

        A uniqueness race with a concurrent delivery must come back as
        ALREADY_EXISTS, never as an exception.
        """
        ...

    async def mark_processed(self, event_id: str) -> None:
        ...

    async def mark_failed(self, event_id: str, error: str) -> None:
        ...


class SubscriptionLock(Protocol):
    """Exclusive, per-subscription critical section."""

    def hold(self, key: str) -> AbstractAsyncContextManager[Any]:
        """
        Usage:
            async with lock.hold(subscription_id):
                ...

        Raises:
            TransientInfrastructureError: lock not acquired in time
        """
        ...


class SubscriptionEventPublisher(Protocol):
    """Receives domain events after the aggregate was persisted."""

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        ...
