"""
Stripe webhook receiver tests.

Signatures are computed the way Stripe does (HMAC-SHA256 over
"{timestamp}.{payload}"), so verification runs through the real SDK.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from subscription_billing.application import PaymentEventProcessor
from subscription_billing.domain.aggregates import PaymentStatus, SubscriptionStatus
from subscription_billing.domain.events import PaymentEvent
from subscription_billing.domain.exceptions import ValidationError, WebhookSignatureError
from subscription_billing.domain.value_objects import Currency, Money
from subscription_billing.infrastructure.memory import (
    InMemorySubscriptionRepository,
    InMemoryWebhookEventLedger,
    InProcessSubscriptionLock,
)
from subscription_billing.integrations.stripe_webhook import (
    StripeWebhookReceiver,
    minor_units_to_money,
    translate_event_type,
)


def sign(payload: str, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(
    event_id: str = "evt_1",
    event_type: str = "payment_intent.succeeded",
    metadata: dict | None = None,
    **data_object,
) -> dict:
    body = {"id": "pi_1", "object": "payment_intent", "currency": "usd", **data_object}
    body["metadata"] = {"subscription_id": "sub_1", "user_id": "user_1"} if metadata is None else metadata
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1710504000,
        "data": {"object": body},
    }


@pytest.fixture
def repository():
    return InMemorySubscriptionRepository()


@pytest.fixture
def processor(repository, test_settings, today):
    return PaymentEventProcessor(
        subscriptions=repository,
        ledger=InMemoryWebhookEventLedger(),
        lock=InProcessSubscriptionLock(timeout=1.0),
        settings=test_settings,
        clock=lambda: today,
    )


@pytest.fixture
def receiver(processor, test_settings):
    return StripeWebhookReceiver(processor, settings=test_settings)


class TestEventTypeTranslation:
    @pytest.mark.parametrize(
        "event_type, expected",
        [
            ("payment_intent.succeeded", PaymentEvent.PAYMENT_SUCCEEDED),
            ("invoice.paid", PaymentEvent.PAYMENT_SUCCEEDED),
            ("checkout.session.completed", PaymentEvent.PAYMENT_SUCCEEDED),
            ("payment_intent.payment_failed", PaymentEvent.PAYMENT_FAILED),
            ("invoice.payment_failed", PaymentEvent.PAYMENT_FAILED),
            ("charge.failed", PaymentEvent.PAYMENT_FAILED),
            ("payment_intent.processing", PaymentEvent.PAYMENT_PENDING),
            ("invoice.payment_action_required", PaymentEvent.PAYMENT_PENDING),
        ],
    )
    def test_known_types(self, event_type, expected):
        assert translate_event_type(event_type) is expected

    def test_is_case_and_space_tolerant(self):
        assert translate_event_type("  Invoice.Paid ") is PaymentEvent.PAYMENT_SUCCEEDED

    @pytest.mark.parametrize("event_type", [None, "", "   ", "customer.created", "charge.refunded"])
    def test_unsupported_types(self, event_type):
        with pytest.raises(ValidationError):
            translate_event_type(event_type)


class TestAmountConversion:
    def test_two_decimal_currency(self):
        assert minor_units_to_money(999, "usd") == Money.of("9.99", Currency.USD)

    def test_zero_decimal_currency(self):
        assert minor_units_to_money(500, "jpy") == Money.of(500, Currency.JPY)

    def test_unsupported_currency(self):
        with pytest.raises(ValidationError):
            minor_units_to_money(100, "xyz")


class TestCommandMapping:
    def test_maps_payment_intent(self, receiver):
        command = receiver.to_command(stripe_event(amount=999, amount_received=999))

        assert command.external_payment_id == "evt_1"
        assert command.event is PaymentEvent.PAYMENT_SUCCEEDED
        assert command.subscription_id == "sub_1"
        assert command.user_id == "user_1"
        assert command.amount == Money.of("9.99", "USD")
        assert command.event_occurred_at == datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def test_camel_case_metadata_and_invoice_amount(self, receiver):
        event = stripe_event(
            event_type="invoice.paid",
            metadata={"subscriptionId": "sub_2", "userId": "user_2"},
            amount_paid=1500,
            currency="eur",
        )

        command = receiver.to_command(event)

        assert command.subscription_id == "sub_2"
        assert command.user_id == "user_2"
        assert command.amount.amount == Decimal("15.00")
        assert command.amount.currency is Currency.EUR

    def test_missing_currency_falls_back_to_configured_default(self, processor, test_settings):
        receiver = StripeWebhookReceiver(
            processor, settings=test_settings.model_copy(update={"default_currency": Currency.GBP})
        )

        command = receiver.to_command(stripe_event(amount=2500, currency=None))

        assert command.amount == Money.of("25.00", Currency.GBP)

    def test_pending_event_without_amount(self, receiver):
        command = receiver.to_command(stripe_event(event_type="payment_intent.processing"))

        assert command.event is PaymentEvent.PAYMENT_PENDING
        assert command.amount is None


class TestStripeWebhookReceiver:
    @pytest.mark.asyncio
    async def test_applies_verified_event_once(self, receiver, repository, make_subscription, test_settings):
        await repository.save(make_subscription(status=SubscriptionStatus.PENDING_ACTIVATION))
        payload = json.dumps(stripe_event(amount=999, amount_received=999))
        signature = sign(payload, test_settings.stripe_webhook_secret)

        first = await receiver.receive(payload, signature)
        second = await receiver.receive(payload, signature)

        subscription = await repository.find_by_id("sub_1")
        assert first == {"status": "processed", "event_id": "evt_1", "event_type": "payment_intent.succeeded"}
        assert second["status"] == "duplicate"
        assert subscription.status is SubscriptionStatus.ACTIVE
        assert [p.status for p in subscription.payments] == [PaymentStatus.SUCCEEDED]
        assert subscription.payments[0].external_reference == "evt_1"

    @pytest.mark.asyncio
    async def test_accepts_bytes_payload(self, receiver, repository, make_subscription, test_settings):
        await repository.save(make_subscription())
        payload = json.dumps(stripe_event(event_type="charge.failed", amount=999))
        signature = sign(payload, test_settings.stripe_webhook_secret)

        result = await receiver.receive(payload.encode(), signature)

        assert result["status"] == "processed"
        assert (await repository.find_by_id("sub_1")).status is SubscriptionStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_bad_signature(self, receiver, repository, make_subscription):
        await repository.save(make_subscription())
        payload = json.dumps(stripe_event(amount=999))

        with pytest.raises(WebhookSignatureError):
            await receiver.receive(payload, sign(payload, "whsec_wrong"))

        assert (await repository.find_by_id("sub_1")).payments == ()

    @pytest.mark.asyncio
    async def test_signature_error_is_a_validation_error(self, receiver):
        payload = json.dumps(stripe_event(amount=999))
        with pytest.raises(ValidationError):
            await receiver.receive(payload, "t=1,v1=deadbeef")

    @pytest.mark.asyncio
    async def test_requires_configured_secret(self, processor, test_settings):
        receiver = StripeWebhookReceiver(
            processor, settings=test_settings.model_copy(update={"stripe_webhook_secret": ""})
        )
        payload = json.dumps(stripe_event(amount=999))

        with pytest.raises(ValidationError):
            await receiver.receive(payload, sign(payload, "anything"))

    @pytest.mark.asyncio
    async def test_unsupported_event_type(self, receiver, test_settings):
        payload = json.dumps(stripe_event(event_type="customer.created"))

        with pytest.raises(ValidationError):
            await receiver.receive(payload, sign(payload, test_settings.stripe_webhook_secret))
