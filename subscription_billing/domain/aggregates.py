"""
Aggregates - Consistency Boundaries

An aggregate is a cluster of domain objects that must be consistent.
Here the Subscription is the aggregate root and owns its Payment history:
one Subscription (with its Payments) = one transaction boundary.

Key invariants:
1. Status transitions only happen through the lifecycle methods below.
2. A CANCELLED subscription rejects every mutation; an EXPIRED one rejects
   payment-event application until it is renewed.
3. Payment history is append-only. Payments are immutable records; resolving
   a payment produces a new record, history is never rewritten.

Deduplication of provider events is NOT enforced here - that contract belongs
to the webhook event ledger in front of the aggregate.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from subscription_billing.domain.events import (
    DomainEvent,
    PaymentRecorded,
    SubscriptionRenewed,
    SubscriptionStatusChanged,
)
from subscription_billing.domain.exceptions import (
    CurrencyMismatchError,
    StateConflictError,
    ValidationError,
)
from subscription_billing.domain.value_objects import (
    DEFAULT_CURRENCY,
    Currency,
    Money,
    PaymentMethod,
    SubscriptionType,
    add_months,
    months_between,
)

logger = structlog.get_logger(__name__)


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def new_subscription_id() -> str:
    return f"sub_{uuid.uuid4().hex}"


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    PENDING → SUCCEEDED
        ↓
      FAILED

    SUCCEEDED and FAILED are terminal.
    """

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(BaseModel):
    """
    One billing attempt against a subscription.

    Immutable: ``mark_as_succeeded``/``mark_as_failed`` return a new record.
    ``external_reference`` is the upstream correlation key (provider event id).
    """

    model_config = ConfigDict(frozen=True)

    payment_id: str = Field(default_factory=new_payment_id)
    subscription_id: str
    user_id: str
    amount: Money
    status: PaymentStatus = PaymentStatus.PENDING
    occurred_on: date
    external_reference: str | None = None

    @classmethod
    def create(
        cls,
        occurred_on: date,
        user_id: str,
        subscription_id: str,
        amount: Money,
        external_reference: str | None = None,
    ) -> Payment:
        """Factory method: every payment starts PENDING."""
        if amount is None:
            raise ValidationError("Payment amount is required")
        return cls(
            subscription_id=subscription_id,
            user_id=user_id,
            amount=amount,
            occurred_on=occurred_on,
            external_reference=external_reference,
        )

    def mark_as_succeeded(self) -> Payment:
        if self.status is PaymentStatus.SUCCEEDED:
            return self
        if self.status is PaymentStatus.FAILED:
            raise StateConflictError(
                f"Cannot mark failed payment {self.payment_id} as succeeded",
                subscription_id=self.subscription_id,
            )
        return self.model_copy(update={"status": PaymentStatus.SUCCEEDED})

    def mark_as_failed(self) -> Payment:
        if self.status is PaymentStatus.FAILED:
            return self
        if self.status is PaymentStatus.SUCCEEDED:
            raise StateConflictError(
                f"Cannot mark succeeded payment {self.payment_id} as failed",
                subscription_id=self.subscription_id,
            )
        return self.model_copy(update={"status": PaymentStatus.FAILED})

    def is_paid(self) -> bool:
        return self.status is PaymentStatus.SUCCEEDED

    def is_pending(self) -> bool:
        return self.status is PaymentStatus.PENDING

    def is_failed(self) -> bool:
        return self.status is PaymentStatus.FAILED

    def is_overdue(self, today: date | None = None) -> bool:
        today = today or date.today()
        return self.is_pending() and today > self.occurred_on

    def days_overdue(self, today: date | None = None) -> int:
        today = today or date.today()
        if not self.is_overdue(today):
            return 0
        return (today - self.occurred_on).days

    def days_until_due(self, today: date | None = None) -> int:
        today = today or date.today()
        if not self.is_pending() or self.is_overdue(today):
            return 0
        return (self.occurred_on - today).days


class PaymentHistory:
    """
    Append-only arena of immutable Payment records.

    Records are stored once, keyed by their stable id; the subscription sees
    them through an ordered list of ids (insertion order = arrival order).
    """

    def __init__(self, payments: Iterable[Payment] = ()):
        self._arena: dict[str, Payment] = {}
        self._order: list[str] = []
        for payment in payments:
            self.append(payment)

    def append(self, payment: Payment) -> None:
        if payment.payment_id in self._arena:
            raise StateConflictError(
                f"Payment {payment.payment_id} already recorded",
                subscription_id=payment.subscription_id,
            )
        self._arena[payment.payment_id] = payment
        self._order.append(payment.payment_id)

    def get(self, payment_id: str) -> Payment | None:
        return self._arena.get(payment_id)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._order)

    def __iter__(self) -> Iterator[Payment]:
        return (self._arena[payment_id] for payment_id in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, payment_id: object) -> bool:
        return payment_id in self._arena


class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle states.

    PENDING_ACTIVATION ──payment ok──→ ACTIVE ──payment failed──→ INACTIVE
            │                          │  ↑                        │
            └───────payment failed─────┼──┼──────────→ INACTIVE    │
                                       │  └──payment ok/activate───┘
                                     cancel ──→ CANCELLED (terminal)

    EXPIRED is computed from start_date and plan length, never stored.
    """

    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


INITIAL_STATUSES = (SubscriptionStatus.PENDING_ACTIVATION, SubscriptionStatus.ACTIVE)


@dataclass
class Subscription:
    """
    Subscription Aggregate Root.

    Mutated exclusively through:
    - register_payment_succeeded / register_payment_failed (provider events)
    - activate_subscription / deactivate_subscription (manual resume/suspend)
    - cancel (terminal)
    - reset_billing_anchor (renewal)

    ``version`` is the optimistic concurrency stamp checked by the repository.
    """

    subscription_id: str
    user_id: str
    type: SubscriptionType
    payment_method: PaymentMethod | None
    status: SubscriptionStatus
    start_date: date
    currency: Currency = DEFAULT_CURRENCY
    version: int = 0
    failed_attempts: int = 0  # dunning counter, cleared by a successful payment

    _history: PaymentHistory = field(default_factory=PaymentHistory, repr=False)
    _pending_events: list[DomainEvent] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if self.status is SubscriptionStatus.EXPIRED:
            raise ValidationError("EXPIRED is computed from dates and cannot be stored")

    @classmethod
    def create(
        cls,
        start_date: date,
        type: SubscriptionType,
        user_id: str,
        payment_method: PaymentMethod | None,
        status: SubscriptionStatus = SubscriptionStatus.PENDING_ACTIVATION,
        currency: Currency = DEFAULT_CURRENCY,
        subscription_id: str | None = None,
    ) -> Subscription:
        """
        Factory method: start a new subscription.

        Whether it starts ACTIVE or PENDING_ACTIVATION depends on the outcome
        of the initial payment, which is decided by the creating use case.
        """
        if status not in INITIAL_STATUSES:
            raise ValidationError(f"A subscription cannot start in status {status.value}")
        if not user_id:
            raise ValidationError("A subscription requires a user id")
        return cls(
            subscription_id=subscription_id or new_subscription_id(),
            user_id=user_id,
            type=type,
            payment_method=payment_method,
            status=status,
            start_date=start_date,
            currency=currency,
        )

    @classmethod
    def rehydrate(
        cls,
        subscription_id: str,
        user_id: str,
        type: SubscriptionType,
        payment_method: PaymentMethod | None,
        status: SubscriptionStatus,
        start_date: date,
        payments: Iterable[Payment] = (),
        currency: Currency = DEFAULT_CURRENCY,
        version: int = 0,
        failed_attempts: int = 0,
    ) -> Subscription:
        """Rebuild a stored subscription together with its payment history."""
        return cls(
            subscription_id=subscription_id,
            user_id=user_id,
            type=type,
            payment_method=payment_method,
            status=status,
            start_date=start_date,
            currency=currency,
            version=version,
            failed_attempts=failed_attempts,
            _history=PaymentHistory(payments),
        )

    # ------------------------------------------------------------------
    # Payment events
    # ------------------------------------------------------------------

    def register_payment_succeeded(
        self, payment: Payment, today: date | None = None
    ) -> Payment:
        """
        Record a successful payment.

        PENDING_ACTIVATION / INACTIVE → ACTIVE; ACTIVE stays ACTIVE.
        Clears the dunning counter.
        """
        self._ensure_accepts_payment_events(payment, today)
        resolved = payment.mark_as_succeeded()
        self._append_payment(resolved)
        self.failed_attempts = 0
        if self.status is not SubscriptionStatus.ACTIVE:
            self._transition(SubscriptionStatus.ACTIVE, "payment_succeeded")
        return resolved

    def register_payment_failed(
        self, payment: Payment, today: date | None = None
    ) -> Payment:
        """
        Record a failed payment.

        Any non-terminal status → INACTIVE. Repeated failures keep appending
        FAILED payments; deduplication is the ledger's job.
        """
        self._ensure_accepts_payment_events(payment, today)
        resolved = payment.mark_as_failed()
        self._append_payment(resolved)
        self.failed_attempts += 1
        if self.status is not SubscriptionStatus.INACTIVE:
            self._transition(SubscriptionStatus.INACTIVE, "payment_failed")
        return resolved

    # ------------------------------------------------------------------
    # Manual lifecycle
    # ------------------------------------------------------------------

    def activate_subscription(self) -> None:
        """Manual resume: INACTIVE / PENDING_ACTIVATION → ACTIVE."""
        self._ensure_not_cancelled("activate")
        self._require_status(
            "activate", SubscriptionStatus.INACTIVE, SubscriptionStatus.PENDING_ACTIVATION
        )
        self._ensure_no_pending_payments("activate")
        self._transition(SubscriptionStatus.ACTIVE, "manual_activation")

    def deactivate_subscription(self) -> None:
        """Manual suspension: ACTIVE → INACTIVE."""
        self._ensure_not_cancelled("deactivate")
        self._require_status("deactivate", SubscriptionStatus.ACTIVE)
        self._ensure_no_pending_payments("deactivate")
        self._transition(SubscriptionStatus.INACTIVE, "manual_suspension")

    def cancel(self, reason: str = "user_requested") -> None:
        """ACTIVE / INACTIVE → CANCELLED (terminal)."""
        self._ensure_not_cancelled("cancel")
        self._require_status("cancel", SubscriptionStatus.ACTIVE, SubscriptionStatus.INACTIVE)
        self._ensure_no_pending_payments("cancel")
        self._transition(SubscriptionStatus.CANCELLED, reason)

    def reset_billing_anchor(self, new_start_date: date) -> None:
        """Start a new billing period on ``new_start_date``."""
        self._ensure_not_cancelled("renew")
        previous = self.start_date
        self.start_date = new_start_date
        self._pending_events.append(
            SubscriptionRenewed(
                aggregate_id=self.subscription_id,
                previous_start_date=previous,
                new_start_date=new_start_date,
            )
        )

    def change_type(self, new_type: SubscriptionType) -> None:
        if new_type is None:
            raise ValidationError("Subscription type cannot be None")
        self._ensure_not_cancelled("change type of")
        if self.type.is_annual and len(self._history) > 0:
            raise StateConflictError(
                "Cannot change an annual subscription once a payment was made",
                subscription_id=self.subscription_id,
            )
        self.type = new_type

    def change_payment_method(self, new_method: PaymentMethod) -> None:
        if new_method is None:
            raise ValidationError("Payment method cannot be None")
        self._ensure_not_cancelled("change payment method of")
        self.payment_method = new_method

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def payments(self) -> tuple[Payment, ...]:
        return tuple(self._history)

    @property
    def payment_ids(self) -> tuple[str, ...]:
        return self._history.ids

    def expiration_date(self) -> date:
        return add_months(self.start_date, self.type.period_months)

    def is_expired(self, today: date | None = None) -> bool:
        """Pure function of start_date, plan length and ``today``."""
        today = today or date.today()
        return today > self.expiration_date()

    def days_until_expiration(self, today: date | None = None) -> int:
        today = today or date.today()
        return (self.expiration_date() - today).days

    def is_about_to_expire(self, days_threshold: int, today: date | None = None) -> bool:
        remaining = self.days_until_expiration(today)
        return 0 <= remaining <= days_threshold

    def next_payment_date(self, today: date | None = None) -> date:
        today = today or date.today()
        expiration = self.expiration_date()
        return today if today > expiration else expiration

    def completed_periods(self, today: date | None = None) -> int:
        today = today or date.today()
        return months_between(self.start_date, today) // self.type.period_months

    def current_status(self, today: date | None = None) -> SubscriptionStatus:
        if self.status is SubscriptionStatus.CANCELLED:
            return self.status
        if self.is_expired(today):
            return SubscriptionStatus.EXPIRED
        return self.status

    def is_cancelled(self) -> bool:
        return self.status is SubscriptionStatus.CANCELLED

    def has_payment_for(self, external_reference: str) -> bool:
        """Whether a payment correlated with this upstream key is already recorded."""
        return any(p.external_reference == external_reference for p in self._history)

    def has_pending_payments(self) -> bool:
        return any(p.is_pending() for p in self._history)

    def has_payment_method(self) -> bool:
        return self.payment_method is not None

    def total_paid(self) -> Money:
        total = Money.zero(self.currency)
        for payment in self._history:
            if payment.is_paid():
                total = total.add(payment.amount)
        return total

    def pull_events(self) -> list[DomainEvent]:
        """Return and clear events recorded since the last pull."""
        events = self._pending_events.copy()
        self._pending_events.clear()
        return events

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_not_cancelled(self, operation: str) -> None:
        if self.status is SubscriptionStatus.CANCELLED:
            raise StateConflictError(
                f"Cannot {operation} cancelled subscription {self.subscription_id}",
                subscription_id=self.subscription_id,
            )

    def _require_status(self, operation: str, *allowed: SubscriptionStatus) -> None:
        if self.status not in allowed:
            raise StateConflictError(
                f"Cannot {operation} subscription in status {self.status.value}",
                subscription_id=self.subscription_id,
            )

    def _ensure_no_pending_payments(self, operation: str) -> None:
        if self.has_pending_payments():
            raise StateConflictError(
                f"Cannot {operation} subscription with pending payments",
                subscription_id=self.subscription_id,
            )

    def _ensure_accepts_payment_events(self, payment: Payment, today: date | None) -> None:
        if payment is None:
            raise ValidationError("Payment must not be None")
        if payment.subscription_id != self.subscription_id:
            raise ValidationError(
                f"Payment {payment.payment_id} belongs to subscription "
                f"{payment.subscription_id}, not {self.subscription_id}"
            )
        if payment.amount.currency != self.currency:
            raise CurrencyMismatchError(
                self.currency.value, payment.amount.currency.value, operation="record"
            )
        self.ensure_accepts_payment_events(today)

    def ensure_accepts_payment_events(self, today: date | None = None) -> None:
        """Raise StateConflictError unless payment events may be applied."""
        self._ensure_not_cancelled("apply payment event to")
        if self.is_expired(today):
            raise StateConflictError(
                f"Subscription {self.subscription_id} expired on "
                f"{self.expiration_date().isoformat()}; renew before applying payments",
                subscription_id=self.subscription_id,
            )

    def _append_payment(self, payment: Payment) -> None:
        self._history.append(payment)
        self._pending_events.append(
            PaymentRecorded(
                aggregate_id=self.subscription_id,
                payment_id=payment.payment_id,
                status=payment.status.value,
                amount=payment.amount.amount,
                currency=payment.amount.currency.value,
                external_reference=payment.external_reference,
            )
        )

    def _transition(self, to_status: SubscriptionStatus, reason: str) -> None:
        from_status = self.status
        self.status = to_status
        self._pending_events.append(
            SubscriptionStatusChanged(
                aggregate_id=self.subscription_id,
                from_status=from_status.value,
                to_status=to_status.value,
                reason=reason,
            )
        )
        logger.debug(
            "subscription.transition",
            subscription_id=self.subscription_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
