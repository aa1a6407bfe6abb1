"""
In-memory adapter tests: versioned repository, webhook ledger, subscription lock.
"""
import asyncio

import pytest

from subscription_billing.application.ports import LedgerInsertResult, WebhookEventStatus
from subscription_billing.domain.aggregates import SubscriptionStatus
from subscription_billing.domain.exceptions import (
    ConcurrencyError,
    NotFoundError,
    TransientInfrastructureError,
)
from subscription_billing.infrastructure.memory import (
    InMemoryEventPublisher,
    InMemorySubscriptionRepository,
    InMemoryWebhookEventLedger,
    InProcessSubscriptionLock,
)


class TestInMemorySubscriptionRepository:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self, make_subscription):
        repository = InMemorySubscriptionRepository()
        subscription = make_subscription()

        saved = await repository.save(subscription)

        assert saved.version == 1
        assert (await repository.find_by_id("sub_1")).version == 1

    @pytest.mark.asyncio
    async def test_stale_save_is_rejected(self, make_subscription):
        repository = InMemorySubscriptionRepository()
        await repository.save(make_subscription())
        first = await repository.find_by_id("sub_1")
        second = await repository.find_by_id("sub_1")

        first.deactivate_subscription()
        await repository.save(first)
        second.cancel()

        with pytest.raises(ConcurrencyError) as exc_info:
            await repository.save(second)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.current_version == 2
        assert (await repository.find_by_id("sub_1")).status is SubscriptionStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_returns_private_copies(self, make_subscription):
        repository = InMemorySubscriptionRepository()
        await repository.save(make_subscription())

        loaded = await repository.find_by_id("sub_1")
        loaded.cancel()

        assert (await repository.find_by_id("sub_1")).status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stored_snapshot_has_no_pending_events(self, make_subscription):
        repository = InMemorySubscriptionRepository()
        subscription = make_subscription()
        subscription.deactivate_subscription()

        await repository.save(subscription)

        assert (await repository.find_by_id("sub_1")).pull_events() == []

    @pytest.mark.asyncio
    async def test_lookups(self, make_subscription):
        repository = InMemorySubscriptionRepository()
        await repository.save(make_subscription(user_id="user_7"))

        assert (await repository.find_by_user_id("user_7")).subscription_id == "sub_1"
        assert await repository.find_by_user_id("nobody") is None
        assert await repository.find_by_id("sub_missing") is None
        assert await repository.find_payments("sub_1") == ()
        assert await repository.find_payments("sub_missing") == ()


class TestInMemoryWebhookEventLedger:
    @pytest.fixture
    def ledger(self, clock):
        return InMemoryWebhookEventLedger(claim_ttl_seconds=300, clock=clock)

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, ledger, clock):
        assert await ledger.insert_received("evt-1", "payment_succeeded", "{}") is LedgerInsertResult.RECEIVED
        assert await ledger.insert_received("evt-1", "payment_succeeded") is LedgerInsertResult.ALREADY_EXISTS

        record = await ledger.get("evt-1")
        assert record.status is WebhookEventStatus.RECEIVED
        assert record.received_at == clock.now
        assert record.raw_payload == "{}"
        assert not await ledger.exists_processed("evt-1")

    @pytest.mark.asyncio
    async def test_processed_event_is_never_reclaimed(self, ledger, clock):
        await ledger.insert_received("evt-1", "payment_succeeded")
        await ledger.mark_processed("evt-1")
        processed_at = clock.now
        clock.advance(3600)

        assert await ledger.exists_processed("evt-1")
        assert await ledger.insert_received("evt-1", "payment_succeeded") is LedgerInsertResult.ALREADY_EXISTS
        assert (await ledger.get("evt-1")).processed_at == processed_at

    @pytest.mark.asyncio
    async def test_failed_event_is_reclaimed(self, ledger):
        await ledger.insert_received("evt-1", "payment_failed")
        await ledger.mark_failed("evt-1", "database unavailable")

        assert await ledger.insert_received("evt-1", "payment_failed") is LedgerInsertResult.RECEIVED

        record = await ledger.get("evt-1")
        assert record.status is WebhookEventStatus.RECEIVED
        assert record.attempts == 2
        assert record.last_error == "database unavailable"

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_reclaimed_after_ttl(self, ledger, clock):
        await ledger.insert_received("evt-1", "payment_succeeded")

        clock.advance(299)
        assert await ledger.insert_received("evt-1", "payment_succeeded") is LedgerInsertResult.ALREADY_EXISTS
        clock.advance(2)
        assert await ledger.insert_received("evt-1", "payment_succeeded") is LedgerInsertResult.RECEIVED

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, ledger):
        results = await asyncio.gather(
            *(ledger.insert_received("evt-1", "payment_succeeded") for _ in range(10))
        )
        assert results.count(LedgerInsertResult.RECEIVED) == 1

    @pytest.mark.asyncio
    async def test_marking_unknown_event(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.mark_processed("evt-unknown")
        with pytest.raises(NotFoundError):
            await ledger.mark_failed("evt-unknown", "boom")

    @pytest.mark.asyncio
    async def test_find_unprocessed_oldest_first(self, ledger, clock):
        await ledger.insert_received("evt-1", "payment_succeeded")
        clock.advance(1)
        await ledger.insert_received("evt-2", "payment_failed")
        clock.advance(1)
        await ledger.insert_received("evt-3", "payment_failed")
        await ledger.mark_failed("evt-1", "boom")
        await ledger.mark_processed("evt-2")

        unprocessed = await ledger.find_unprocessed()

        assert [r.external_event_id for r in unprocessed] == ["evt-1", "evt-3"]


class TestInProcessSubscriptionLock:
    @pytest.mark.asyncio
    async def test_serializes_same_key(self):
        lock = InProcessSubscriptionLock()
        trace = []

        async def critical(name):
            async with lock.hold("sub_1"):
                trace.append(f"{name}:enter")
                await asyncio.sleep(0)
                trace.append(f"{name}:exit")

        await asyncio.gather(critical("a"), critical("b"))

        assert trace == ["a:enter", "a:exit", "b:enter", "b:exit"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        lock = InProcessSubscriptionLock(timeout=0.05)

        async with lock.hold("sub_1"):
            async with lock.hold("sub_2"):
                assert lock.active_keys == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        lock = InProcessSubscriptionLock(timeout=0.01)

        async with lock.hold("sub_1"):
            with pytest.raises(TransientInfrastructureError):
                async with lock.hold("sub_1"):
                    pass

        assert lock.active_keys == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        lock = InProcessSubscriptionLock(timeout=0.05)

        with pytest.raises(RuntimeError):
            async with lock.hold("sub_1"):
                raise RuntimeError("boom")

        async with lock.hold("sub_1"):
            pass
        assert lock.active_keys == 0


class TestInMemoryEventPublisher:
    @pytest.mark.asyncio
    async def test_collects_in_order(self, make_subscription):
        publisher = InMemoryEventPublisher()
        subscription = make_subscription()
        subscription.deactivate_subscription()
        subscription.activate_subscription()

        await publisher.publish(subscription.pull_events())

        assert [e.to_status for e in publisher.published] == ["inactive", "active"]
