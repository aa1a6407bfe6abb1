"""
In-memory adapters (for testing and local development).

Production uses PostgreSQL for the webhook ledger and Redis for the
cross-process lock, but these are useful for:
- Unit tests (fast, no infrastructure required)
- Local development
- Single-process deployments where an asyncio lock is enough
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import structlog

from subscription_billing.application.ports import (
    LedgerInsertResult,
    WebhookEventRecord,
    WebhookEventStatus,
)
from subscription_billing.domain.aggregates import Payment, Subscription
from subscription_billing.domain.events import DomainEvent
from subscription_billing.domain.exceptions import (
    ConcurrencyError,
    NotFoundError,
    TransientInfrastructureError,
)

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySubscriptionRepository:
    """
    Versioned subscription store.

    Holds private snapshots, so callers never share an aggregate instance;
    two concurrent load-mutate-save sequences behave like two database
    transactions and the slower one gets a ConcurrencyError.
    """

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}

    async def save(self, subscription: Subscription) -> Subscription:
        stored = self._subscriptions.get(subscription.subscription_id)
        current_version = stored.version if stored is not None else 0

        # Optimistic concurrency check
        if subscription.version != current_version:
            raise ConcurrencyError(
                subscription.subscription_id, subscription.version, current_version
            )

        subscription.version = current_version + 1
        snapshot = copy.deepcopy(subscription)
        snapshot.pull_events()
        self._subscriptions[subscription.subscription_id] = snapshot

        logger.debug(
            "subscription_repository.saved",
            subscription_id=subscription.subscription_id,
            version=subscription.version,
        )
        return subscription

    async def find_by_id(self, subscription_id: str) -> Subscription | None:
        stored = self._subscriptions.get(subscription_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def find_by_user_id(self, user_id: str) -> Subscription | None:
        for stored in self._subscriptions.values():
            if stored.user_id == user_id:
                return copy.deepcopy(stored)
        return None

    async def find_payments(self, subscription_id: str) -> Sequence[Payment]:
        stored = self._subscriptions.get(subscription_id)
        return stored.payments if stored is not None else ()


class InMemoryWebhookEventLedger:
    """Webhook ledger whose check-and-insert is guarded by one asyncio.Lock."""

    def __init__(
        self,
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.clock = clock
        self._records: dict[str, WebhookEventRecord] = {}
        self._lock = asyncio.Lock()

    async def exists_processed(self, event_id: str) -> bool:
        record = self._records.get(event_id)
        return record is not None and record.is_processed

    async def insert_received(
        self, event_id: str, event_type: str, payload: str | None = None
    ) -> LedgerInsertResult:
        async with self._lock:
            now = self.clock()
            record = self._records.get(event_id)

            if record is None:
                self._records[event_id] = WebhookEventRecord(
                    external_event_id=event_id,
                    event_type=event_type,
                    raw_payload=payload,
                    received_at=now,
                )
                return LedgerInsertResult.RECEIVED

            if self._is_reclaimable(record, now):
                self._records[event_id] = record.model_copy(
                    update={
                        "status": WebhookEventStatus.RECEIVED,
                        "received_at": now,
                        "attempts": record.attempts + 1,
                    }
                )
                logger.info(
                    "webhook_ledger.reclaimed",
                    event_id=event_id,
                    previous_status=record.status.value,
                    attempts=record.attempts + 1,
                )
                return LedgerInsertResult.RECEIVED

            return LedgerInsertResult.ALREADY_EXISTS

    async def mark_processed(self, event_id: str) -> None:
        async with self._lock:
            record = self._require(event_id)
            self._records[event_id] = record.model_copy(
                update={
                    "status": WebhookEventStatus.PROCESSED,
                    "processed_at": self.clock(),
                    "last_error": None,
                }
            )

    async def mark_failed(self, event_id: str, error: str) -> None:
        async with self._lock:
            record = self._require(event_id)
            self._records[event_id] = record.model_copy(
                update={"status": WebhookEventStatus.FAILED, "last_error": error}
            )

    async def get(self, event_id: str) -> WebhookEventRecord | None:
        return self._records.get(event_id)

    async def find_unprocessed(self) -> list[WebhookEventRecord]:
        pending = [r for r in self._records.values() if not r.is_processed]
        return sorted(pending, key=lambda r: r.received_at)

    def _require(self, event_id: str) -> WebhookEventRecord:
        record = self._records.get(event_id)
        if record is None:
            raise NotFoundError(f"Webhook event {event_id} was never recorded")
        return record

    def _is_reclaimable(self, record: WebhookEventRecord, now: datetime) -> bool:
        if record.status is WebhookEventStatus.FAILED:
            return True
        return (
            record.status is WebhookEventStatus.RECEIVED
            and record.received_at < now - self.claim_ttl
        )


class InProcessSubscriptionLock:
    """
    One asyncio.Lock per subscription id.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the map does not grow with the number of subscriptions.
    """

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @property
    def active_keys(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("subscription_lock.timeout", key=key, timeout=self.timeout)
                raise TransientInfrastructureError(
                    f"Timed out after {self.timeout}s waiting for lock on {key}"
                ) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class InMemoryEventPublisher:
    """Collects published domain events in order."""

    def __init__(self):
        self.published: list[DomainEvent] = []

    async def publish(self, events: Sequence[DomainEvent]) -> None:
        self.published.extend(events)
