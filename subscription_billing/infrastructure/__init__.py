"""
Infrastructure Layer - adapters for the application ports.

memory: in-process repository, ledger, lock and publisher
database: SQLAlchemy webhook ledger
redis_lock: cross-process subscription lock
"""
from .memory import (
    InMemoryEventPublisher,
    InMemorySubscriptionRepository,
    InMemoryWebhookEventLedger,
    InProcessSubscriptionLock,
)

__all__ = [
    "InMemoryEventPublisher",
    "InMemorySubscriptionRepository",
    "InMemoryWebhookEventLedger",
    "InProcessSubscriptionLock",
]
