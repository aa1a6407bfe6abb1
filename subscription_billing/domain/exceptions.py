"""
Billing error taxonomy.

    BillingError (base)
    ├── ValidationError               malformed command / unknown provider event
    │   ├── CurrencyMismatchError      Money arithmetic across currencies
    │   └── WebhookSignatureError      provider signature did not verify
    ├── NotFoundError                  referenced subscription does not exist
    ├── StateConflictError             operation incompatible with current state
    ├── DuplicateEventError            ledger race (absorbed, never surfaced)
    └── TransientInfrastructureError   persistence / lock failure (retryable)
        └── ConcurrencyError           optimistic version check failed

Callers use ``retryable`` to tell a redelivery-worthy failure from a
permanent one.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base exception for all billing errors."""

    retryable: bool = False


class ValidationError(BillingError):
    """Raised when a command or input value is malformed."""


class CurrencyMismatchError(ValidationError, ValueError):
    """Raised when two Money values with different currencies are combined."""

    def __init__(self, left: str, right: str, operation: str = "combine"):
        self.left = left
        self.right = right
        super().__init__(f"Cannot {operation} {left} and {right} - convert first")


class WebhookSignatureError(ValidationError):
    """Raised when a provider webhook signature cannot be verified."""


class NotFoundError(BillingError):
    """Raised when a referenced subscription does not exist."""

    def __init__(self, message: str, subscription_id: str | None = None):
        self.subscription_id = subscription_id
        super().__init__(message)


class StateConflictError(BillingError):
    """
    Raised when an operation is attempted against an incompatible state.

    Examples: mutating a CANCELLED subscription, renewing a subscription that
    has not expired, renewing while a payment is still PENDING.
    """

    def __init__(self, message: str, subscription_id: str | None = None):
        self.subscription_id = subscription_id
        super().__init__(message)


class DuplicateEventError(BillingError):
    """Raised inside ledger adapters when a uniqueness race is lost."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Webhook event {event_id} already recorded")


class TransientInfrastructureError(BillingError):
    """Persistence or lock failure; safe to retry the same delivery."""

    retryable = True


class ConcurrencyError(TransientInfrastructureError):
    """
    Raised when optimistic concurrency check fails.

    This prevents lost updates in concurrent scenarios.
    """

    def __init__(self, aggregate_id: str, expected: int, current: int):
        self.aggregate_id = aggregate_id
        self.expected_version = expected
        self.current_version = current
        super().__init__(
            f"Concurrency conflict for {aggregate_id}: "
            f"expected version {expected}, current version {current}"
        )
