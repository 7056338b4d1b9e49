"""Repository interfaces."""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

from subscrio.catalog.models import BillingCycle, Feature, Plan, Product
from subscrio.core.models import SubscrioBaseModel
from subscrio.customers.models import Customer
from subscrio.subscriptions.models import Subscription, SubscriptionStatus

ModelT = TypeVar("ModelT", bound=SubscrioBaseModel)


class Repository(ABC, Generic[ModelT]):
    """
    Abstract base class for aggregate repositories.

    Implementations hand out copies of stored aggregates. ``save`` compares
    the aggregate's ``version`` with the stored one and raises
    ``ConcurrencyConflictError`` on mismatch; on success the version of the
    passed aggregate is incremented.
    """

    @abstractmethod
    async def save(self, entity: ModelT) -> ModelT:
        """Insert or update an aggregate."""
        pass

    @abstractmethod
    async def find_by_id(self, entity_id: str) -> ModelT | None:
        """Get aggregate by surrogate id."""
        pass

    @abstractmethod
    async def find_by_key(self, key: str) -> ModelT | None:
        """Get aggregate by natural key."""
        pass

    @abstractmethod
    async def find_all(self, filters: dict[str, Any] | None = None) -> list[ModelT]:
        """List aggregates whose attributes equal the given filters."""
        pass

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        """Hard-delete an aggregate."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if an aggregate with the natural key exists."""
        pass


class FeatureRepository(Repository[Feature]):
    @abstractmethod
    async def find_by_ids(self, feature_ids: Iterable[str]) -> list[Feature]:
        pass

    @abstractmethod
    async def find_by_product(self, product_id: str) -> list[Feature]:
        """Features associated with a product."""
        pass

    @abstractmethod
    async def has_product_associations(self, feature_id: str) -> bool:
        pass

    @abstractmethod
    async def has_plan_feature_values(self, feature_id: str) -> bool:
        pass

    @abstractmethod
    async def has_subscription_overrides(self, feature_id: str) -> bool:
        pass


class ProductRepository(Repository[Product]):
    @abstractmethod
    async def has_plans(self, product_id: str) -> bool:
        pass


class PlanRepository(Repository[Plan]):
    @abstractmethod
    async def find_by_ids(self, plan_ids: Iterable[str]) -> list[Plan]:
        pass

    @abstractmethod
    async def find_by_product(self, product_id: str) -> list[Plan]:
        pass

    @abstractmethod
    async def has_billing_cycles(self, plan_id: str) -> bool:
        pass

    @abstractmethod
    async def has_transition_references(self, billing_cycle_key: str) -> bool:
        """Check if any plan transitions to the billing cycle on expiry."""
        pass


class BillingCycleRepository(Repository[BillingCycle]):
    @abstractmethod
    async def find_by_plan(self, plan_id: str) -> list[BillingCycle]:
        pass

    @abstractmethod
    async def find_by_external_price_id(self, price_id: str) -> BillingCycle | None:
        pass


class CustomerRepository(Repository[Customer]):
    @abstractmethod
    async def find_by_external_billing_id(self, external_billing_id: str) -> Customer | None:
        pass


class SubscriptionRepository(Repository[Subscription]):
    @abstractmethod
    async def find_by_customer(
        self, customer_id: str, statuses: Iterable[SubscriptionStatus] | None = None
    ) -> list[Subscription]:
        """Subscriptions of a customer, optionally restricted to statuses."""
        pass

    @abstractmethod
    async def find_by_external_billing_id(self, external_billing_id: str) -> Subscription | None:
        pass

    @abstractmethod
    async def find_active_by_customer_and_plan(
        self, customer_id: str, plan_id: str
    ) -> Subscription | None:
        pass

    @abstractmethod
    async def find_due_for_renewal(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Auto-renewing active or trial subscriptions whose period has elapsed."""
        pass

    @abstractmethod
    async def find_due_for_status_sync(
        self, now: datetime, limit: int = 100
    ) -> list[Subscription]:
        """Pending, trial or cancellation-pending subscriptions whose status change is due."""
        pass

    @abstractmethod
    async def find_lapsed(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Non-terminal subscriptions past period end that will not renew."""
        pass

    @abstractmethod
    async def find_expired_with_transition_plans(
        self, now: datetime, limit: int = 100
    ) -> list[Subscription]:
        """Lapsed subscriptions whose plan declares an expiry transition."""
        pass

    @abstractmethod
    async def has_subscriptions_for_billing_cycle(self, billing_cycle_id: str) -> bool:
        pass

    @abstractmethod
    async def has_subscriptions_for_plan(self, plan_id: str) -> bool:
        pass

    @abstractmethod
    async def has_subscriptions_for_customer(self, customer_id: str) -> bool:
        pass


class RepositoryBundle(Protocol):
    """One repository per aggregate, sharing a consistent store."""

    @property
    def features(self) -> FeatureRepository: ...

    @property
    def products(self) -> ProductRepository: ...

    @property
    def plans(self) -> PlanRepository: ...

    @property
    def billing_cycles(self) -> BillingCycleRepository: ...

    @property
    def customers(self) -> CustomerRepository: ...

    @property
    def subscriptions(self) -> SubscriptionRepository: ...
