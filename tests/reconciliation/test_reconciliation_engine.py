"""
Tests for provider webhook reconciliation.

Events are built in the Stripe webhook shape. The clock and event times are
fixed so replays and out-of-order deliveries are deterministic.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from subscrio.config import ReconciliationConfig
from subscrio.exceptions import ConcurrencyConflictError, ConfigurationError
from subscrio.reconciliation.events import ProviderEvent
from subscrio.reconciliation.service import ReconciliationEngine, ReconciliationOutcome
from subscrio.subscriptions.models import SubscriptionStatus

pytestmark = [pytest.mark.asyncio, pytest.mark.usefixtures("seeded_catalog", "customer")]

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


def epoch(value: datetime) -> int:
    return int(value.timestamp())


def make_event(event_id, event_type, obj, created=NOW):
    return {
        "id": event_id,
        "type": event_type,
        "created": epoch(created),
        "data": {"object": obj},
    }


def customer_object(customer_id="cus_1", metadata=None):
    obj = {"id": customer_id, "object": "customer", "email": "one@example.com"}
    if metadata is not None:
        obj["metadata"] = metadata
    return obj


def subscription_object(
    subscription_id="sub_ext_1",
    status="active",
    price="price_basic_monthly",
    period_start=NOW,
    period_end=NOW + timedelta(days=31),
    **extra,
):
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "start_date": epoch(period_start),
        "current_period_start": epoch(period_start),
        "current_period_end": epoch(period_end),
        "items": {"data": [{"price": {"id": price}}]},
        "metadata": {"subscrioCustomerKey": "cust-1"},
    }
    obj.update(extra)
    return obj


def invoice_object(period_start, period_end, subscription_id="sub_ext_1"):
    return {
        "id": "in_1",
        "object": "invoice",
        "subscription": subscription_id,
        "lines": {"data": [{"period": {"start": epoch(period_start), "end": epoch(period_end)}}]},
    }


class TestEnvelope:
    """Test routing, deduplication and configuration."""

    async def test_malformed_event_ignored(self, engine):
        outcome = await engine.process_provider_event({"type": "customer.created"})
        assert outcome is ReconciliationOutcome.IGNORED

    async def test_unknown_type_ignored(self, engine):
        outcome = await engine.process_provider_event(
            make_event("evt_1", "charge.refunded", {"id": "ch_1"})
        )
        assert outcome is ReconciliationOutcome.IGNORED
        assert len(engine.ledger) == 0

    async def test_duplicate_delivery_skipped(self, engine):
        event = make_event(
            "evt_1", "customer.created", customer_object(metadata={"subscrioCustomerKey": "cust-1"})
        )
        assert await engine.process_provider_event(event) is ReconciliationOutcome.APPLIED
        assert await engine.process_provider_event(event) is ReconciliationOutcome.DUPLICATE

    async def test_max_attempts_must_be_positive(self, repos):
        with pytest.raises(ConfigurationError):
            ReconciliationEngine(
                repos.customers,
                repos.subscriptions,
                repos.billing_cycles,
                config=ReconciliationConfig(max_attempts=0),
            )


class TestCustomerEvents:
    """Test customer mapping events."""

    async def test_created_links_customer_by_metadata(self, engine, repos):
        event = make_event(
            "evt_1",
            "customer.created",
            customer_object(metadata={"subscrio_customer_key": "cust-1"}),
        )
        assert await engine.process_provider_event(event) is ReconciliationOutcome.APPLIED

        customer = await repos.customers.find_by_key("cust-1")
        assert customer.external_billing_id == "cus_1"

    async def test_replay_with_cleared_ledger_is_noop(self, engine, repos):
        event = make_event(
            "evt_1", "customer.created", customer_object(metadata={"subscrioCustomerKey": "cust-1"})
        )
        await engine.process_provider_event(event)
        version = (await repos.customers.find_by_key("cust-1")).version

        engine.ledger.clear()
        assert await engine.process_provider_event(event) is ReconciliationOutcome.APPLIED
        assert (await repos.customers.find_by_key("cust-1")).version == version

    async def test_update_without_metadata_keeps_mapping(self, engine, repos):
        await engine.process_provider_event(
            make_event(
                "evt_1",
                "customer.created",
                customer_object(metadata={"subscrioCustomerKey": "cust-1"}),
            )
        )
        outcome = await engine.process_provider_event(
            make_event("evt_2", "customer.updated", customer_object(), NOW + timedelta(minutes=1))
        )

        assert outcome is ReconciliationOutcome.APPLIED
        assert (await repos.customers.find_by_key("cust-1")).external_billing_id == "cus_1"

    async def test_unresolvable_customer_ignored_and_not_recorded(self, engine):
        event = make_event("evt_1", "customer.updated", customer_object("cus_unknown"))
        assert await engine.process_provider_event(event) is ReconciliationOutcome.IGNORED
        assert engine.ledger.seen("evt_1") is False

    async def test_deleted_clears_mapping(self, engine, repos):
        await engine.process_provider_event(
            make_event(
                "evt_1",
                "customer.created",
                customer_object(metadata={"subscrioCustomerKey": "cust-1"}),
            )
        )
        outcome = await engine.process_provider_event(
            make_event("evt_2", "customer.deleted", customer_object())
        )

        assert outcome is ReconciliationOutcome.APPLIED
        assert (await repos.customers.find_by_key("cust-1")).external_billing_id is None


class TestSubscriptionEvents:
    """Test subscription creation, updates and deletion."""

    async def test_created_builds_subscription(self, engine, repos):
        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        assert outcome is ReconciliationOutcome.APPLIED

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        cycle = await repos.billing_cycles.find_by_key("basic-monthly")
        assert subscription.status is SubscriptionStatus.ACTIVE
        assert subscription.billing_cycle_id == cycle.id
        assert subscription.plan_id == cycle.plan_id
        assert subscription.current_period_end == NOW + timedelta(days=31)
        assert subscription.external_synced_at == NOW

        customer = await repos.customers.find_by_key("cust-1")
        assert customer.external_billing_id == "cus_1"

    async def test_created_for_internal_subscription_links_only(
        self, engine, repos, subscription_service
    ):
        await subscription_service.create_subscription("cust-1", "basic-monthly", "sub-1")
        payload = subscription_object(
            status="trialing",
            metadata={"subscrioCustomerKey": "cust-1", "subscrioSubscriptionKey": "sub-1"},
        )

        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", payload)
        )
        assert outcome is ReconciliationOutcome.APPLIED

        subscription = await repos.subscriptions.find_by_key("sub-1")
        assert subscription.external_billing_id == "sub_ext_1"
        assert subscription.status is SubscriptionStatus.ACTIVE
        assert len(await repos.subscriptions.find_all()) == 1

    async def test_unknown_price_ignored(self, engine, repos):
        outcome = await engine.process_provider_event(
            make_event(
                "evt_1", "customer.subscription.created", subscription_object(price="price_other")
            )
        )
        assert outcome is ReconciliationOutcome.IGNORED
        assert await repos.subscriptions.find_all() == []

    async def test_updated_for_unknown_subscription_creates_it(self, engine, repos):
        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.updated", subscription_object())
        )
        assert outcome is ReconciliationOutcome.APPLIED
        assert await repos.subscriptions.find_by_external_billing_id("sub_ext_1") is not None

    async def test_updated_applies_status(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        later = NOW + timedelta(minutes=5)
        outcome = await engine.process_provider_event(
            make_event(
                "evt_2",
                "customer.subscription.updated",
                subscription_object(status="canceled", canceled_at=epoch(later)),
                later,
            )
        )

        assert outcome is ReconciliationOutcome.APPLIED
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.CANCELLED
        assert subscription.cancellation_date == later

    async def test_cancel_at_period_end_maps_to_cancellation_pending(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        await engine.process_provider_event(
            make_event(
                "evt_2",
                "customer.subscription.updated",
                subscription_object(cancel_at_period_end=True),
                NOW + timedelta(minutes=1),
            )
        )

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.CANCELLATION_PENDING
        assert subscription.cancellation_date == NOW + timedelta(days=31)

    async def test_missing_period_does_not_erase_known_period(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        payload = subscription_object(status="past_due")
        for field in ("current_period_start", "current_period_end", "items"):
            payload.pop(field)

        await engine.process_provider_event(
            make_event(
                "evt_2", "customer.subscription.updated", payload, NOW + timedelta(minutes=1)
            )
        )

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.SUSPENDED
        assert subscription.current_period_end == NOW + timedelta(days=31)

    async def test_out_of_order_event_is_stale(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        await engine.process_provider_event(
            make_event(
                "evt_3",
                "customer.subscription.updated",
                subscription_object(status="past_due"),
                NOW + timedelta(minutes=10),
            )
        )
        outcome = await engine.process_provider_event(
            make_event(
                "evt_2",
                "customer.subscription.updated",
                subscription_object(status="active"),
                NOW + timedelta(minutes=5),
            )
        )

        assert outcome is ReconciliationOutcome.STALE
        assert engine.ledger.seen("evt_2") is True
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.SUSPENDED

    async def test_price_change_not_applied(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        await engine.process_provider_event(
            make_event(
                "evt_2",
                "customer.subscription.updated",
                subscription_object(price="price_pro_yearly"),
                NOW + timedelta(minutes=1),
            )
        )

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        cycle = await repos.billing_cycles.find_by_key("basic-monthly")
        assert subscription.billing_cycle_id == cycle.id

    async def test_deleted_expires_idempotently(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        deleted = make_event(
            "evt_2",
            "customer.subscription.deleted",
            subscription_object(status="canceled"),
            NOW + timedelta(hours=1),
        )

        assert await engine.process_provider_event(deleted) is ReconciliationOutcome.APPLIED
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.EXPIRED
        assert subscription.expiration_date == NOW + timedelta(hours=1)

        engine.ledger.clear()
        assert await engine.process_provider_event(deleted) is ReconciliationOutcome.APPLIED
        replayed = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert replayed.version == subscription.version

    async def test_deleted_applies_after_newer_update(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        await engine.process_provider_event(
            make_event(
                "evt_3",
                "customer.subscription.updated",
                subscription_object(),
                NOW + timedelta(hours=2),
            )
        )
        await engine.process_provider_event(
            make_event(
                "evt_2",
                "customer.subscription.deleted",
                subscription_object(),
                NOW + timedelta(hours=1),
            )
        )

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.status is SubscriptionStatus.EXPIRED


class TestInvoiceEvents:
    """Test paid invoices advancing the billing period."""

    async def test_invoice_advances_period(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        start = NOW + timedelta(days=31)
        end = NOW + timedelta(days=60)

        outcome = await engine.process_provider_event(
            make_event("evt_2", "invoice.payment_succeeded", invoice_object(start, end))
        )

        assert outcome is ReconciliationOutcome.APPLIED
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.current_period_start == start
        assert subscription.current_period_end == end

    async def test_older_invoice_never_moves_period_backwards(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        outcome = await engine.process_provider_event(
            make_event(
                "evt_2",
                "invoice.payment_succeeded",
                invoice_object(NOW - timedelta(days=31), NOW),
            )
        )

        assert outcome is ReconciliationOutcome.APPLIED
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.current_period_start == NOW

    async def test_invoice_for_unlinked_subscription_ignored(self, engine):
        outcome = await engine.process_provider_event(
            make_event(
                "evt_1",
                "invoice.payment_succeeded",
                invoice_object(NOW, NOW + timedelta(days=30), subscription_id="sub_missing"),
            )
        )
        assert outcome is ReconciliationOutcome.IGNORED


class TestConcurrency:
    """Test retries on concurrent modification."""

    @staticmethod
    def conflict(entity):
        return ConcurrencyConflictError(
            "modified concurrently",
            entity="subscription",
            entity_id=entity.id,
            expected_version=entity.version,
        )

    async def test_conflict_is_retried(self, engine, repos):
        original_save = repos.subscriptions.save
        attempts = []

        async def flaky_save(entity):
            attempts.append(entity.key)
            if len(attempts) == 1:
                raise self.conflict(entity)
            return await original_save(entity)

        repos.subscriptions.save = AsyncMock(side_effect=flaky_save)

        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )

        assert outcome is ReconciliationOutcome.APPLIED
        assert repos.subscriptions.save.await_count == 2
        assert len(await repos.subscriptions.find_all()) == 1

    async def test_persistent_conflict_raises_and_is_not_recorded(self, engine, repos):
        async def always_conflict(entity):
            raise self.conflict(entity)

        repos.subscriptions.save = AsyncMock(side_effect=always_conflict)

        with pytest.raises(ConcurrencyConflictError):
            await engine.process_provider_event(
                make_event("evt_1", "customer.subscription.created", subscription_object())
            )

        assert repos.subscriptions.save.await_count == 3
        assert engine.ledger.seen("evt_1") is False


class TestEventTimestamps:
    """Test normalisation of the envelope creation time."""

    def test_epoch_seconds_are_utc(self):
        event = ProviderEvent.model_validate(make_event("evt_1", "customer.created", {}))
        assert event.created == NOW
        assert event.created.tzinfo is UTC

    def test_naive_iso_string_read_as_utc(self):
        event = ProviderEvent.model_validate(
            {"id": "evt_1", "type": "customer.created", "created": "2024-01-15T12:00:00",
             "data": {"object": {}}}
        )
        assert event.created == NOW

    def test_offset_converted_to_utc(self):
        event = ProviderEvent.model_validate(
            {"id": "evt_1", "type": "customer.created", "created": "2024-01-15T14:00:00+02:00",
             "data": {"object": {}}}
        )
        assert event.created == NOW
        assert event.created.utcoffset() == timedelta(0)

    async def test_subscription_created_from_naive_timestamp(self, engine, repos):
        payload = subscription_object()
        del payload["start_date"]
        event = {
            "id": "evt_1",
            "type": "customer.subscription.created",
            "created": "2024-01-15T12:00:00",
            "data": {"object": payload},
        }

        assert await engine.process_provider_event(event) is ReconciliationOutcome.APPLIED

        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.activation_date == NOW
        assert subscription.activation_date.tzinfo is not None
        assert subscription.external_synced_at == NOW


class TestMalformedPayloads:
    """Test payload fields of the wrong type."""

    async def test_non_string_status_ignored_and_not_recorded(self, engine, repos):
        event = make_event(
            "evt_1", "customer.subscription.created", subscription_object(status=["active"])
        )

        assert await engine.process_provider_event(event) is ReconciliationOutcome.IGNORED
        assert engine.ledger.seen("evt_1") is False
        assert await repos.subscriptions.find_all() == []
        # Nothing is half-applied before the subscription is rejected
        assert (await repos.customers.find_by_key("cust-1")).external_billing_id is None

    async def test_redelivery_after_rejection_is_not_duplicate(self, engine):
        bad = make_event(
            "evt_1", "customer.subscription.created", subscription_object(status={"v": 1})
        )
        assert await engine.process_provider_event(bad) is ReconciliationOutcome.IGNORED

        fixed = make_event("evt_1", "customer.subscription.created", subscription_object())
        assert await engine.process_provider_event(fixed) is ReconciliationOutcome.APPLIED

    async def test_price_object_without_id_ignored(self, engine, repos):
        payload = subscription_object()
        payload["items"] = {"data": [{"price": {"unit_amount": 500}}]}

        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", payload)
        )
        assert outcome is ReconciliationOutcome.IGNORED
        assert await repos.subscriptions.find_all() == []

    async def test_wrongly_typed_dates_do_not_erase_period(self, engine, repos):
        await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )
        later = NOW + timedelta(minutes=1)
        payload = subscription_object(
            current_period_start="yesterday", current_period_end=[1], trial_end={"at": 1}
        )

        outcome = await engine.process_provider_event(
            make_event("evt_2", "customer.subscription.updated", payload, later)
        )

        assert outcome is ReconciliationOutcome.APPLIED
        subscription = await repos.subscriptions.find_by_external_billing_id("sub_ext_1")
        assert subscription.current_period_end == NOW + timedelta(days=31)
        assert subscription.trial_end_date is None

    async def test_non_string_metadata_key_ignored(self, engine, repos):
        event = make_event(
            "evt_1", "customer.created", customer_object(metadata={1: "cust-1", None: "x"})
        )

        assert await engine.process_provider_event(event) is ReconciliationOutcome.IGNORED
        assert engine.ledger.seen("evt_1") is False
        assert (await repos.customers.find_by_key("cust-1")).external_billing_id is None

    async def test_metadata_not_a_mapping_ignored(self, engine):
        event = make_event("evt_1", "customer.created", customer_object(metadata=["cust-1"]))
        assert await engine.process_provider_event(event) is ReconciliationOutcome.IGNORED

    async def test_handler_type_error_dropped_without_recording(self, engine, repos):
        repos.billing_cycles.find_by_external_price_id = AsyncMock(
            side_effect=TypeError("unhashable type: 'dict'")
        )

        outcome = await engine.process_provider_event(
            make_event("evt_1", "customer.subscription.created", subscription_object())
        )

        assert outcome is ReconciliationOutcome.IGNORED
        assert engine.ledger.seen("evt_1") is False
        assert await repos.subscriptions.find_all() == []
