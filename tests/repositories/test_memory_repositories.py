"""
Tests for the in-memory repositories.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from subscrio.catalog.models import BillingCycle, Plan
from subscrio.customers.models import Customer
from subscrio.exceptions import ConcurrencyConflictError, ConflictError
from subscrio.repositories.memory import InMemoryRepositories
from subscrio.subscriptions.models import Subscription, SubscriptionStatus

pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def store():
    return InMemoryRepositories()


class TestVersioning:
    """Test optimistic concurrency on save."""

    async def test_save_increments_version(self, store):
        customer = Customer(key="cust-1")
        await store.customers.save(customer)
        assert customer.version == 1
        await store.customers.save(customer)
        assert customer.version == 2

    async def test_stale_copy_rejected(self, store):
        await store.customers.save(Customer(key="cust-1"))
        first = await store.customers.find_by_key("cust-1")
        second = await store.customers.find_by_key("cust-1")

        first.update_contact(email="a@example.com")
        await store.customers.save(first)

        second.update_contact(email="b@example.com")
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await store.customers.save(second)
        assert exc_info.value.error_code == "CONCURRENT_MODIFICATION"
        assert exc_info.value.context["expected_version"] == 1

    async def test_reads_are_copies(self, store):
        await store.customers.save(Customer(key="cust-1"))
        loaded = await store.customers.find_by_key("cust-1")
        loaded.email = "changed@example.com"
        assert (await store.customers.find_by_key("cust-1")).email is None


class TestUniqueness:
    """Test natural key and external id uniqueness."""

    async def test_duplicate_key(self, store):
        await store.customers.save(Customer(key="cust-1"))
        with pytest.raises(ConflictError):
            await store.customers.save(Customer(key="cust-1"))

    async def test_duplicate_external_id(self, store):
        await store.customers.save(Customer(key="cust-1", external_billing_id="cus_1"))
        with pytest.raises(ConflictError):
            await store.customers.save(Customer(key="cust-2", external_billing_id="cus_1"))

        found = await store.customers.find_by_external_billing_id("cus_1")
        assert found.key == "cust-1"


class TestSubscriptionQueries:
    """Test the batch selection queries."""

    @pytest_asyncio.fixture
    async def cycle(self, store):
        plan = Plan(key="basic", product_id="prod-1", display_name="Basic")
        await store.plans.save(plan)
        cycle = BillingCycle(
            key="monthly",
            plan_id=plan.id,
            display_name="Monthly",
            duration_unit="months",
            duration_value=1,
        )
        await store.billing_cycles.save(cycle)
        return cycle

    async def subscribe(self, store, cycle, key, **kwargs):
        subscription = Subscription.start(
            key=key, customer_id="cust-1", billing_cycle=cycle, now=NOW, **kwargs
        )
        await store.subscriptions.save(subscription)
        return subscription

    async def test_due_for_renewal_and_lapsed(self, store, cycle):
        await self.subscribe(store, cycle, "renews")
        await self.subscribe(store, cycle, "lapses", auto_renew=False)
        later = NOW + timedelta(days=40)

        assert [s.key for s in await store.subscriptions.find_due_for_renewal(later)] == ["renews"]
        assert [s.key for s in await store.subscriptions.find_lapsed(later)] == ["lapses"]
        assert await store.subscriptions.find_expired_with_transition_plans(later) == []

    async def test_transition_candidates(self, store, cycle):
        await self.subscribe(store, cycle, "lapses", auto_renew=False)
        plan = await store.plans.find_by_id(cycle.plan_id)
        plan.set_transition_target("monthly")
        await store.plans.save(plan)
        later = NOW + timedelta(days=40)

        assert await store.subscriptions.find_lapsed(later) == []
        candidates = await store.subscriptions.find_expired_with_transition_plans(later)
        assert [s.key for s in candidates] == ["lapses"]

    async def test_find_by_customer_filters_status(self, store, cycle):
        await self.subscribe(store, cycle, "live")
        cancelled = await self.subscribe(store, cycle, "gone")
        cancelled.cancel(NOW)
        await store.subscriptions.save(cancelled)

        rows = await store.subscriptions.find_by_customer("cust-1", [SubscriptionStatus.ACTIVE])
        assert [s.key for s in rows] == ["live"]

    async def test_find_all_paginates(self, store, cycle):
        for index in range(5):
            await self.subscribe(store, cycle, f"sub-{index}")
        page = await store.subscriptions.find_all({"limit": 2, "offset": 1})
        assert len(page) == 2

    async def test_due_for_status_sync(self, store, cycle):
        await self.subscribe(store, cycle, "active")
        await self.subscribe(store, cycle, "pending", activation_date=NOW + timedelta(days=5))
        await self.subscribe(store, cycle, "trial", trial_end_date=NOW + timedelta(days=7))
        leaving = await self.subscribe(store, cycle, "leaving")
        leaving.cancel(NOW, effective_at=NOW + timedelta(days=10))
        await store.subscriptions.save(leaving)
        gone = await self.subscribe(store, cycle, "gone")
        gone.cancel(NOW)
        await store.subscriptions.save(gone)

        assert await store.subscriptions.find_due_for_status_sync(NOW) == []

        due = await store.subscriptions.find_due_for_status_sync(NOW + timedelta(days=6))
        assert [s.key for s in due] == ["pending"]

        due = await store.subscriptions.find_due_for_status_sync(NOW + timedelta(days=20))
        assert {s.key for s in due} == {"pending", "trial", "leaving"}
        limited = await store.subscriptions.find_due_for_status_sync(NOW + timedelta(days=20), 2)
        assert len(limited) == 2
