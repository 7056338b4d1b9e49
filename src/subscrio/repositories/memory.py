"""
In-memory repository implementations.

All repositories built on one ``InMemoryStore`` share its tables, so
cross-aggregate checks (feature associations, plan transition references,
subscription overrides) see a consistent snapshot. Aggregates are deep
copied on the way in and out: callers never hold a reference into the store.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Generic

import structlog

from subscrio.catalog.models import BillingCycle, Feature, Plan, Product
from subscrio.customers.models import Customer
from subscrio.exceptions import ConcurrencyConflictError, ConflictError
from subscrio.repositories.base import (
    BillingCycleRepository,
    CustomerRepository,
    FeatureRepository,
    ModelT,
    PlanRepository,
    ProductRepository,
    SubscriptionRepository,
)
from subscrio.subscriptions.models import (
    RENEWABLE_STATUSES,
    Subscription,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

# Statuses whose elapsed period hands the subscription to expiry processing
_LAPSING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.CANCELLATION_PENDING,
    }
)
_TRANSITION_STATUSES = _LAPSING_STATUSES | {SubscriptionStatus.CANCELLED}


class InMemoryStore:
    """Tables shared by the in-memory repositories."""

    def __init__(self) -> None:
        self.features: dict[str, Feature] = {}
        self.products: dict[str, Product] = {}
        self.plans: dict[str, Plan] = {}
        self.billing_cycles: dict[str, BillingCycle] = {}
        self.customers: dict[str, Customer] = {}
        self.subscriptions: dict[str, Subscription] = {}

    def clear(self) -> None:
        for table in (
            self.features,
            self.products,
            self.plans,
            self.billing_cycles,
            self.customers,
            self.subscriptions,
        ):
            table.clear()


class InMemoryRepository(Generic[ModelT]):
    """Dictionary-backed repository with optimistic version checks."""

    entity_name = "entity"
    table_name = ""

    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()

    @property
    def _table(self) -> dict[str, ModelT]:
        return getattr(self.store, self.table_name)

    def _rows(self) -> list[ModelT]:
        return sorted(self._table.values(), key=lambda row: row.created_at)

    def _copy(self, entity: ModelT | None) -> ModelT | None:
        return entity.model_copy(deep=True) if entity is not None else None

    def _check_unique(self, entity: ModelT) -> None:
        key = getattr(entity, "key", None)
        for row in self._table.values():
            if row.id != entity.id and key is not None and row.key == key:
                raise ConflictError(
                    f"{self.entity_name.capitalize()} with key '{key}' already exists",
                    entity=self.entity_name,
                    key=key,
                )

    async def save(self, entity: ModelT) -> ModelT:
        stored = self._table.get(entity.id)
        expected = stored.version if stored is not None else 0
        if entity.version != expected:
            raise ConcurrencyConflictError(
                f"{self.entity_name.capitalize()} '{entity.id}' was modified concurrently",
                entity=self.entity_name,
                entity_id=entity.id,
                expected_version=entity.version,
            )
        self._check_unique(entity)

        entity.version = expected + 1
        self._table[entity.id] = entity.model_copy(deep=True)
        logger.debug(
            "Aggregate saved", entity=self.entity_name, entity_id=entity.id, version=entity.version
        )
        return entity

    async def find_by_id(self, entity_id: str) -> ModelT | None:
        return self._copy(self._table.get(entity_id))

    async def find_by_key(self, key: str) -> ModelT | None:
        for row in self._table.values():
            if getattr(row, "key", None) == key:
                return self._copy(row)
        return None

    async def find_all(self, filters: dict[str, Any] | None = None) -> list[ModelT]:
        filters = dict(filters or {})
        limit = filters.pop("limit", None)
        offset = filters.pop("offset", 0)

        rows = [
            row
            for row in self._rows()
            if all(getattr(row, field, None) == value for field, value in filters.items())
        ]
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return [row.model_copy(deep=True) for row in rows]

    async def delete(self, entity_id: str) -> bool:
        return self._table.pop(entity_id, None) is not None

    async def exists(self, key: str) -> bool:
        return any(getattr(row, "key", None) == key for row in self._table.values())


class InMemoryFeatureRepository(InMemoryRepository[Feature], FeatureRepository):
    entity_name = "feature"
    table_name = "features"

    async def find_by_ids(self, feature_ids: Iterable[str]) -> list[Feature]:
        wanted = set(feature_ids)
        return [row.model_copy(deep=True) for row in self._rows() if row.id in wanted]

    async def find_by_product(self, product_id: str) -> list[Feature]:
        product = self.store.products.get(product_id)
        if product is None:
            return []
        return [
            self.store.features[feature_id].model_copy(deep=True)
            for feature_id in product.feature_ids
            if feature_id in self.store.features
        ]

    async def has_product_associations(self, feature_id: str) -> bool:
        return any(feature_id in product.feature_ids for product in self.store.products.values())

    async def has_plan_feature_values(self, feature_id: str) -> bool:
        return any(
            plan.get_feature_value(feature_id) is not None for plan in self.store.plans.values()
        )

    async def has_subscription_overrides(self, feature_id: str) -> bool:
        return any(
            override.feature_id == feature_id
            for subscription in self.store.subscriptions.values()
            for override in subscription.feature_overrides
        )


class InMemoryProductRepository(InMemoryRepository[Product], ProductRepository):
    entity_name = "product"
    table_name = "products"

    async def has_plans(self, product_id: str) -> bool:
        return any(plan.product_id == product_id for plan in self.store.plans.values())


class InMemoryPlanRepository(InMemoryRepository[Plan], PlanRepository):
    entity_name = "plan"
    table_name = "plans"

    async def find_by_ids(self, plan_ids: Iterable[str]) -> list[Plan]:
        wanted = set(plan_ids)
        return [row.model_copy(deep=True) for row in self._rows() if row.id in wanted]

    async def find_by_product(self, product_id: str) -> list[Plan]:
        return await self.find_all({"product_id": product_id})

    async def has_billing_cycles(self, plan_id: str) -> bool:
        return any(cycle.plan_id == plan_id for cycle in self.store.billing_cycles.values())

    async def has_transition_references(self, billing_cycle_key: str) -> bool:
        return any(
            plan.on_expire_transition_to_billing_cycle_key == billing_cycle_key
            for plan in self.store.plans.values()
        )


class InMemoryBillingCycleRepository(InMemoryRepository[BillingCycle], BillingCycleRepository):
    entity_name = "billing cycle"
    table_name = "billing_cycles"

    async def find_by_plan(self, plan_id: str) -> list[BillingCycle]:
        return await self.find_all({"plan_id": plan_id})

    async def find_by_external_price_id(self, price_id: str) -> BillingCycle | None:
        for row in self._table.values():
            if row.external_price_id == price_id:
                return self._copy(row)
        return None


class _ExternalIdMixin:
    """Uniqueness and lookup on ``external_billing_id``."""

    def _check_unique(self, entity: Any) -> None:
        super()._check_unique(entity)
        external_id = entity.external_billing_id
        if external_id is None:
            return
        for row in self._table.values():
            if row.id != entity.id and row.external_billing_id == external_id:
                raise ConflictError(
                    f"External billing id '{external_id}' is already linked to "
                    f"{self.entity_name} '{row.key}'",
                    entity=self.entity_name,
                    key=external_id,
                )

    async def find_by_external_billing_id(self, external_billing_id: str) -> Any | None:
        for row in self._table.values():
            if row.external_billing_id == external_billing_id:
                return self._copy(row)
        return None


class InMemoryCustomerRepository(
    _ExternalIdMixin, InMemoryRepository[Customer], CustomerRepository
):
    entity_name = "customer"
    table_name = "customers"


class InMemorySubscriptionRepository(
    _ExternalIdMixin, InMemoryRepository[Subscription], SubscriptionRepository
):
    entity_name = "subscription"
    table_name = "subscriptions"

    async def find_by_customer(
        self, customer_id: str, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        wanted = set(statuses) if statuses is not None else None
        return [
            row.model_copy(deep=True)
            for row in self._rows()
            if row.customer_id == customer_id and (wanted is None or row.status in wanted)
        ]

    async def find_active_by_customer_and_plan(
        self, customer_id: str, plan_id: str
    ) -> Subscription | None:
        for row in self._rows():
            if (
                row.customer_id == customer_id
                and row.plan_id == plan_id
                and row.status in RENEWABLE_STATUSES
            ):
                return self._copy(row)
        return None

    async def find_due_for_renewal(self, now: datetime, limit: int = 100) -> list[Subscription]:
        rows = [
            row
            for row in self._rows()
            if row.will_renew() and row.has_period_elapsed(now)
        ]
        return [row.model_copy(deep=True) for row in rows[:limit]]

    async def find_due_for_status_sync(
        self, now: datetime, limit: int = 100
    ) -> list[Subscription]:
        rows = [row for row in self._rows() if row.is_status_sync_due(now)]
        return [row.model_copy(deep=True) for row in rows[:limit]]

    def _lapsed(self, now: datetime, statuses: frozenset) -> list[Subscription]:
        return [
            row
            for row in self._rows()
            if row.status in statuses
            and row.has_period_elapsed(now)
            and not row.will_renew()
        ]

    async def find_lapsed(self, now: datetime, limit: int = 100) -> list[Subscription]:
        rows = [
            row
            for row in self._lapsed(now, _LAPSING_STATUSES)
            if not self._transition_target(row)
        ]
        return [row.model_copy(deep=True) for row in rows[:limit]]

    async def find_expired_with_transition_plans(
        self, now: datetime, limit: int = 100
    ) -> list[Subscription]:
        rows = [row for row in self._lapsed(now, _TRANSITION_STATUSES) if self._transition_target(row)]
        return [row.model_copy(deep=True) for row in rows[:limit]]

    def _transition_target(self, subscription: Subscription) -> str | None:
        plan = self.store.plans.get(subscription.plan_id)
        return plan.on_expire_transition_to_billing_cycle_key if plan is not None else None

    async def has_subscriptions_for_billing_cycle(self, billing_cycle_id: str) -> bool:
        return any(row.billing_cycle_id == billing_cycle_id for row in self._table.values())

    async def has_subscriptions_for_plan(self, plan_id: str) -> bool:
        return any(row.plan_id == plan_id for row in self._table.values())

    async def has_subscriptions_for_customer(self, customer_id: str) -> bool:
        return any(row.customer_id == customer_id for row in self._table.values())


class InMemoryRepositories:
    """Bundle of in-memory repositories sharing one store."""

    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store or InMemoryStore()
        self.features = InMemoryFeatureRepository(self.store)
        self.products = InMemoryProductRepository(self.store)
        self.plans = InMemoryPlanRepository(self.store)
        self.billing_cycles = InMemoryBillingCycleRepository(self.store)
        self.customers = InMemoryCustomerRepository(self.store)
        self.subscriptions = InMemorySubscriptionRepository(self.store)
