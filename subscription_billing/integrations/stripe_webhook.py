"""
Stripe webhook receiver.

Implements:
- Webhook signature verification
- Translation of Stripe event types into the PaymentEvent vocabulary
- Mapping of the Stripe event body into a PaymentEventCommand

Deduplication is not done here; the processor's ledger owns it.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from structlog.contextvars import bound_contextvars

from subscription_billing.application.commands import PaymentEventCommand
from subscription_billing.application.payment_events import PaymentEventProcessor
from subscription_billing.config import Settings, get_settings
from subscription_billing.domain.events import PaymentEvent
from subscription_billing.domain.exceptions import ValidationError, WebhookSignatureError
from subscription_billing.domain.value_objects import Currency, Money

logger = structlog.get_logger(__name__)

STRIPE_EVENT_TYPES: Dict[str, PaymentEvent] = {
    # Succeeded
    "payment_intent.succeeded": PaymentEvent.PAYMENT_SUCCEEDED,
    "charge.succeeded": PaymentEvent.PAYMENT_SUCCEEDED,
    "invoice.paid": PaymentEvent.PAYMENT_SUCCEEDED,
    "checkout.session.completed": PaymentEvent.PAYMENT_SUCCEEDED,
    # Failed
    "payment_intent.payment_failed": PaymentEvent.PAYMENT_FAILED,
    "charge.failed": PaymentEvent.PAYMENT_FAILED,
    "invoice.payment_failed": PaymentEvent.PAYMENT_FAILED,
    "checkout.session.async_payment_failed": PaymentEvent.PAYMENT_FAILED,
    # Pending
    "payment_intent.processing": PaymentEvent.PAYMENT_PENDING,
    "payment_intent.requires_action": PaymentEvent.PAYMENT_PENDING,
    "payment_intent.requires_payment_method": PaymentEvent.PAYMENT_PENDING,
    "payment_intent.requires_confirmation": PaymentEvent.PAYMENT_PENDING,
    "invoice.payment_action_required": PaymentEvent.PAYMENT_PENDING,
    "charge.pending": PaymentEvent.PAYMENT_PENDING,
    "checkout.session.async_payment_succeeded": PaymentEvent.PAYMENT_PENDING,
}

# Stripe amounts are in the smallest currency unit, except for these.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

_AMOUNT_FIELDS = ("amount_received", "amount_paid", "amount", "amount_total")


def translate_event_type(event_type: Optional[str]) -> PaymentEvent:
    """
    Map a Stripe event type to a PaymentEvent.

    Args:
        event_type: Stripe event type (e.g., 'payment_intent.succeeded')

    Returns:
        PaymentEvent: Provider-agnostic event

    Raises:
        ValidationError: If the type is blank or not a payment event
    """
    if event_type is None or not event_type.strip():
        raise ValidationError("Stripe event type is required")
    try:
        return STRIPE_EVENT_TYPES[event_type.strip().lower()]
    except KeyError:
        raise ValidationError(f"Unsupported Stripe event type: {event_type}") from None


def minor_units_to_money(amount: int, currency: str) -> Money:
    """Convert a Stripe minor-unit amount (e.g. 999 usd) into Money (9.99 USD)."""
    code = currency.upper()
    try:
        currency_enum = Currency(code)
    except ValueError:
        raise ValidationError(f"Unsupported currency: {currency}") from None
    value = Decimal(amount)
    if code not in ZERO_DECIMAL_CURRENCIES:
        value = value / 100
    return Money.of(value, currency_enum)


class StripeWebhookReceiver:
    """
    Entry point for Stripe webhook deliveries.

    Verifies the signature, builds a PaymentEventCommand and hands it to the
    PaymentEventProcessor. Errors propagate so the transport can answer
    4xx (ValidationError) or 5xx (retryable errors) and Stripe redelivers.
    """

    def __init__(self, processor: PaymentEventProcessor, settings: Optional[Settings] = None):
        """
        Initialize webhook receiver.

        Args:
            processor: Use case that applies the translated event
            settings: Optional settings (uses get_settings() if not provided)
        """
        self.processor = processor
        self.settings = settings or get_settings()

    def verify_signature(self, payload: bytes | str, signature: str) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            ValidationError: If no webhook secret is configured or the body is not JSON
            WebhookSignatureError: If signature verification fails
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise ValidationError("Stripe webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise ValidationError(f"Invalid webhook payload: {e}") from e

        logger.info("webhook_signature_verified", event_id=event["id"], event_type=event["type"])
        return event

    def to_command(self, event: Mapping[str, Any]) -> PaymentEventCommand:
        """
        Build a PaymentEventCommand from a Stripe event body.

        Args:
            event: Verified Stripe event (or its decoded JSON)

        Returns:
            PaymentEventCommand: Command keyed by the Stripe event id
        """
        payment_event = translate_event_type(event.get("type"))
        data_object = (event.get("data") or {}).get("object") or {}
        metadata = data_object.get("metadata") or {}

        created = event.get("created")
        occurred_at = (
            datetime.fromtimestamp(created, tz=timezone.utc) if created is not None else None
        )

        return PaymentEventCommand(
            external_payment_id=event.get("id") or "",
            event=payment_event,
            subscription_id=metadata.get("subscription_id") or metadata.get("subscriptionId"),
            user_id=metadata.get("user_id") or metadata.get("userId"),
            amount=self._extract_amount(data_object),
            event_occurred_at=occurred_at,
        )

    async def receive(self, payload: bytes | str, signature: str) -> Dict[str, Any]:
        """
        Verify, translate and process one delivery.

        Returns:
            Dict[str, Any]: Processing result ('processed' or 'duplicate')
        """
        event = self.verify_signature(payload, signature)
        # to_command works on the decoded body, not the SDK object
        command = self.to_command(json.loads(payload))

        with bound_contextvars(event_id=command.external_payment_id, event_type=event["type"]):
            logger.info("processing_webhook_event", payment_event=command.event.value)
            outcome = await self.processor.handle(command)
            logger.info("webhook_event_handled", outcome=outcome.value)

        return {
            "status": outcome.value,
            "event_id": command.external_payment_id,
            "event_type": event["type"],
        }

    def _extract_amount(self, data_object: Mapping[str, Any]) -> Optional[Money]:
        for field in _AMOUNT_FIELDS:
            amount = data_object.get(field)
            if amount is not None:
                currency = data_object.get("currency") or self.settings.default_currency.value
                return minor_units_to_money(amount, currency)
        return None
