"""
Payment event processing - the orchestration use case.

Flow for one provider notification:
1. Validate the command (before touching any port)
2. Fast path: already PROCESSED in the ledger → success, nothing applied
3. Acquire the per-subscription lock
4. Claim the event id in the ledger (RECEIVED); lost race → success
5. Load → map → dispatch → save, reloading on a version conflict
6. Mark the ledger record PROCESSED
7. Release the lock, publish the recorded domain events

Any failure after step 4 marks the record FAILED and re-raises, so the
provider's redelivery re-claims it and runs steps 5-6 again.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from enum import Enum
from typing import assert_never

import structlog
from structlog.contextvars import bound_contextvars

from subscription_billing.application.commands import PaymentEventCommand
from subscription_billing.application.mappers import to_payment
from subscription_billing.application.ports import (
    LedgerInsertResult,
    SubscriptionEventPublisher,
    SubscriptionLock,
    SubscriptionRepository,
    WebhookEventLedger,
)
from subscription_billing.config import Settings, get_settings
from subscription_billing.domain.aggregates import Subscription
from subscription_billing.domain.events import DomainEvent, PaymentEvent
from subscription_billing.domain.exceptions import (
    ConcurrencyError,
    NotFoundError,
    ValidationError,
)
from subscription_billing.monitoring.metrics import (
    payment_event_processing_seconds,
    subscription_save_conflicts_total,
    webhook_events_processed_total,
    webhook_events_received_total,
)

logger = structlog.get_logger(__name__)


class HandleOutcome(str, Enum):
    """What ``handle`` did with a delivery. Both values mean success."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"


class PaymentEventProcessor:
    """
    Applies provider payment events to Subscription aggregates exactly once.

    Deliveries are expected at-least-once; the webhook ledger absorbs
    duplicates. Updates to one subscription are serialized by ``lock`` and,
    independently, by the repository's optimistic version check.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        ledger: WebhookEventLedger,
        lock: SubscriptionLock,
        publisher: SubscriptionEventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], date] = date.today,
    ):
        """
        Initialize the processor.

        Args:
            subscriptions: Aggregate repository (version-checked save)
            ledger: Webhook event ledger used for deduplication
            lock: Per-subscription lock held around claim/apply/mark
            publisher: Optional sink for domain events after a successful save
            settings: Optional settings (uses get_settings() if not provided)
            clock: Source of "today" for payment dates and expiry checks
        """
        self.settings = settings or get_settings()
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.lock = lock
        self.publisher = publisher
        self.clock = clock

    async def handle(self, command: PaymentEventCommand) -> HandleOutcome:
        """
        Apply one payment event.

        Returns:
            HandleOutcome: PROCESSED, or DUPLICATE for an absorbed redelivery

        Raises:
            ValidationError: malformed command or user/subscription mismatch
            NotFoundError: subscription does not exist
            StateConflictError: subscription cannot accept payment events
            TransientInfrastructureError: lock, persistence or repeated
                version conflicts; safe to redeliver
        """
        self._validate_command(command)

        event_id = command.external_payment_id
        event = command.event.value
        webhook_events_received_total.labels(event=event).inc()

        with bound_contextvars(event_id=event_id, payment_event=event):
            with payment_event_processing_seconds.time():
                if await self.ledger.exists_processed(event_id):
                    logger.info("payment_event.duplicate", reason="already_processed")
                    webhook_events_processed_total.labels(event=event, status="duplicate").inc()
                    return HandleOutcome.DUPLICATE

                subscription_id = await self._resolve_subscription_id(command)
                with bound_contextvars(subscription_id=subscription_id):
                    return await self._handle_locked(command, subscription_id)

    async def _handle_locked(
        self, command: PaymentEventCommand, subscription_id: str
    ) -> HandleOutcome:
        """Claim, apply and mark under the subscription lock, then publish."""
        event_id = command.external_payment_id
        event = command.event.value

        async with self.lock.hold(subscription_id):
            claim = await self.ledger.insert_received(
                event_id, event, command.model_dump_json()
            )
            if claim is LedgerInsertResult.ALREADY_EXISTS:
                logger.info("payment_event.duplicate", reason="claimed_elsewhere")
                webhook_events_processed_total.labels(event=event, status="duplicate").inc()
                return HandleOutcome.DUPLICATE

            try:
                recorded = await self._apply_with_retry(command, subscription_id)
                await self.ledger.mark_processed(event_id)
            except Exception as exc:
                await self._mark_failed(event_id, exc)
                webhook_events_processed_total.labels(event=event, status="failed").inc()
                raise

        logger.info("payment_event.processed", domain_events=len(recorded))
        webhook_events_processed_total.labels(event=event, status="processed").inc()

        await self._publish(recorded)
        return HandleOutcome.PROCESSED

    @staticmethod
    def _validate_command(command: PaymentEventCommand) -> None:
        if command is None:
            raise ValidationError("Payment event command is required")
        if not command.external_payment_id or not command.external_payment_id.strip():
            raise ValidationError("external_payment_id is required")
        if not command.subscription_id and not command.user_id:
            raise ValidationError(
                "Either subscription_id or user_id is required to correlate the event"
            )
        if command.event is not PaymentEvent.PAYMENT_PENDING and command.amount is None:
            raise ValidationError(f"amount is required for {command.event.value}")

    async def _resolve_subscription_id(self, command: PaymentEventCommand) -> str:
        if command.subscription_id:
            return command.subscription_id

        subscription = await self.subscriptions.find_by_user_id(command.user_id)
        if subscription is None:
            raise NotFoundError(f"No subscription found for user {command.user_id}")
        return subscription.subscription_id

    async def _load(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.find_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                subscription_id=subscription_id,
            )
        return subscription

    async def _apply_with_retry(
        self, command: PaymentEventCommand, subscription_id: str
    ) -> list[DomainEvent]:
        """Load, mutate and save; reload and reapply on a version conflict."""
        max_attempts = self.settings.subscription_save_max_attempts
        attempt = 0
        while True:
            attempt += 1
            subscription = await self._load(subscription_id)
            if command.user_id and subscription.user_id != command.user_id:
                raise ValidationError(
                    f"Event user {command.user_id} does not own subscription {subscription_id}"
                )

            if subscription.has_payment_for(command.external_payment_id):
                # Applied by an earlier run that died before marking the ledger.
                logger.info("payment_event.already_applied")
                return []

            if not self._dispatch(command, subscription, self.clock()):
                return []

            recorded = subscription.pull_events()
            try:
                await self.subscriptions.save(subscription)
                return recorded
            except ConcurrencyError as exc:
                subscription_save_conflicts_total.inc()
                logger.warning(
                    "payment_event.save_conflict",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    expected_version=exc.expected_version,
                    current_version=exc.current_version,
                )
                if attempt >= max_attempts:
                    raise

    @staticmethod
    def _dispatch(
        command: PaymentEventCommand, subscription: Subscription, today: date
    ) -> bool:
        """Route the event to the aggregate. Returns whether anything changed."""
        match command.event:
            case PaymentEvent.PAYMENT_SUCCEEDED:
                payment = to_payment(command, subscription, today)
                subscription.register_payment_succeeded(payment, today)
                return True
            case PaymentEvent.PAYMENT_FAILED:
                payment = to_payment(command, subscription, today)
                subscription.register_payment_failed(payment, today)
                return True
            case PaymentEvent.PAYMENT_PENDING:
                # Outcome unknown until a succeeded/failed event follows.
                subscription.ensure_accepts_payment_events(today)
                return False
            case _:
                assert_never(command.event)

    async def _mark_failed(self, event_id: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(
            "payment_event.failed",
            error=message,
            error_type=type(error).__name__,
            retryable=getattr(error, "retryable", False),
        )
        try:
            await self.ledger.mark_failed(event_id, message)
        except Exception as mark_error:
            # The original error is re-raised by the caller either way.
            logger.error("payment_event.mark_failed_error", error=str(mark_error))

    async def _publish(self, events: list[DomainEvent]) -> None:
        if self.publisher is None or not events:
            return
        try:
            await self.publisher.publish(events)
        except Exception as e:
            # Log but don't fail - the aggregate is already persisted
            logger.error("payment_event.publish_failed", error=str(e), events=len(events))


HandlePaymentEventUseCase = PaymentEventProcessor
