"""
Feature checker service.

Answers "what value does feature X have for this customer right now?".
Each read loads the customer, the product, the product's features, the
customer's live subscriptions and the plans they reference with one
repository call apiece (plans and feature sets may come from the lookup
cache instead), then hands the rows to the resolver.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from subscrio.catalog.models import Feature, Plan, Product
from subscrio.catalog.validators import FeatureValueType, is_truthy_toggle
from subscrio.core.models import utcnow
from subscrio.customers.models import Customer
from subscrio.entitlements.cache import FeatureLookupCache
from subscrio.entitlements.resolver import FeatureValueResolver, order_subscriptions
from subscrio.exceptions import NotFoundError
from subscrio.repositories.base import (
    CustomerRepository,
    FeatureRepository,
    PlanRepository,
    ProductRepository,
    SubscriptionRepository,
)
from subscrio.subscriptions.models import ENTITLED_STATUSES, Subscription

logger = structlog.get_logger(__name__)


class FeatureUsageSummary(BaseModel):
    """Resolved features of one customer in one product, grouped by type."""

    active_subscriptions: int = Field(description="Live subscriptions to the product")
    enabled_features: list[str] = Field(default_factory=list)
    disabled_features: list[str] = Field(default_factory=list)
    numeric_features: dict[str, float] = Field(default_factory=dict)
    text_features: dict[str, str] = Field(default_factory=dict)


@dataclass
class _ResolutionContext:
    customer: Customer
    product: Product
    features: list[Feature]
    plans_by_id: dict[str, Plan]
    subscriptions: list[Subscription]


class FeatureCheckerService:
    """Read-side entitlement queries."""

    def __init__(
        self,
        customers: CustomerRepository,
        products: ProductRepository,
        features: FeatureRepository,
        plans: PlanRepository,
        subscriptions: SubscriptionRepository,
        resolver: FeatureValueResolver | None = None,
        cache: FeatureLookupCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.customers = customers
        self.products = products
        self.features = features
        self.plans = plans
        self.subscriptions = subscriptions
        self.resolver = resolver or FeatureValueResolver()
        self.cache = cache
        self.clock = clock

    # ------------------------------------------------------------------
    # Batched loading
    # ------------------------------------------------------------------

    async def _require_customer(self, key: str) -> Customer:
        customer = await self.customers.find_by_key(key)
        if customer is None:
            raise NotFoundError(f"Customer with key '{key}' not found", entity="customer", key=key)
        return customer

    async def _require_product(self, key: str) -> Product:
        product = await self.products.find_by_key(key)
        if product is None:
            raise NotFoundError(f"Product with key '{key}' not found", entity="product", key=key)
        return product

    async def _load_product_features(self, product: Product) -> list[Feature]:
        if self.cache is not None:
            cached = self.cache.get_product_features(product.id)
            if cached is not None:
                return cached
        features = await self.features.find_by_product(product.id)
        if self.cache is not None:
            self.cache.set_product_features(product.id, features)
        return features

    async def _load_plans(self, plan_ids: set[str]) -> dict[str, Plan]:
        if not plan_ids:
            return {}
        if self.cache is None:
            return {plan.id: plan for plan in await self.plans.find_by_ids(plan_ids)}

        plans_by_id, missing = self.cache.get_plans(plan_ids)
        if missing:
            loaded = await self.plans.find_by_ids(missing)
            self.cache.set_plans(loaded)
            plans_by_id.update({plan.id: plan for plan in loaded})
        return plans_by_id

    async def _load_context(self, customer_key: str, product_key: str) -> _ResolutionContext:
        customer = await self._require_customer(customer_key)
        product = await self._require_product(product_key)
        features = await self._load_product_features(product)
        live = await self.subscriptions.find_by_customer(customer.id, ENTITLED_STATUSES)
        plans_by_id = await self._load_plans({s.plan_id for s in live})

        in_product = [
            s
            for s in live
            if s.plan_id in plans_by_id and plans_by_id[s.plan_id].product_id == product.id
        ]
        return _ResolutionContext(
            customer=customer,
            product=product,
            features=features,
            plans_by_id=plans_by_id,
            subscriptions=order_subscriptions(in_product),
        )

    # ------------------------------------------------------------------
    # Customer queries
    # ------------------------------------------------------------------

    async def get_value_for_customer(
        self, customer_key: str, product_key: str, feature_key: str
    ) -> str:
        """
        Resolve one feature for a customer within a product.

        Raises:
            NotFoundError: Customer or product does not exist, or the feature
                is not part of the product
        """
        context = await self._load_context(customer_key, product_key)
        feature = next((f for f in context.features if f.key == feature_key), None)
        if feature is None:
            raise NotFoundError(
                f"Feature with key '{feature_key}' not found in product '{product_key}'",
                entity="feature",
                key=feature_key,
            )

        resolved = self.resolver.resolve_all(
            [feature], context.plans_by_id, context.subscriptions, at=self.clock()
        )
        logger.debug(
            "Feature value resolved",
            customer_key=customer_key,
            product_key=product_key,
            feature_key=feature_key,
            subscriptions=len(context.subscriptions),
        )
        return resolved[feature_key]

    async def get_all_features_for_customer(
        self, customer_key: str, product_key: str
    ) -> dict[str, str]:
        context = await self._load_context(customer_key, product_key)
        return self.resolver.resolve_all(
            context.features, context.plans_by_id, context.subscriptions, at=self.clock()
        )

    async def is_enabled_for_customer(
        self, customer_key: str, product_key: str, feature_key: str
    ) -> bool:
        return is_truthy_toggle(
            await self.get_value_for_customer(customer_key, product_key, feature_key)
        )

    async def has_plan_access(self, customer_key: str, plan_key: str) -> bool:
        """True when the customer holds a live subscription to the plan."""
        customer = await self._require_customer(customer_key)
        plan = await self.plans.find_by_key(plan_key)
        if plan is None:
            raise NotFoundError(f"Plan with key '{plan_key}' not found", entity="plan", key=plan_key)
        live = await self.subscriptions.find_by_customer(customer.id, ENTITLED_STATUSES)
        return any(s.plan_id == plan.id for s in live)

    async def get_active_plans(self, customer_key: str) -> list[str]:
        """Keys of the plans the customer is entitled to, most recent subscription first."""
        customer = await self._require_customer(customer_key)
        live = order_subscriptions(
            await self.subscriptions.find_by_customer(customer.id, ENTITLED_STATUSES)
        )
        plans_by_id = await self._load_plans({s.plan_id for s in live})

        keys: list[str] = []
        for subscription in live:
            plan = plans_by_id.get(subscription.plan_id)
            if plan is not None and plan.key not in keys:
                keys.append(plan.key)
        return keys

    async def get_feature_usage_summary(
        self, customer_key: str, product_key: str
    ) -> FeatureUsageSummary:
        context = await self._load_context(customer_key, product_key)
        resolved = self.resolver.resolve_all(
            context.features, context.plans_by_id, context.subscriptions, at=self.clock()
        )
        summary = FeatureUsageSummary(active_subscriptions=len(context.subscriptions))

        for feature in context.features:
            value = resolved[feature.key]
            if feature.value_type is FeatureValueType.TOGGLE:
                if is_truthy_toggle(value):
                    summary.enabled_features.append(feature.key)
                else:
                    summary.disabled_features.append(feature.key)
            elif feature.value_type is FeatureValueType.NUMERIC:
                number = float(value)
                if math.isfinite(number):
                    summary.numeric_features[feature.key] = number
            else:
                summary.text_features[feature.key] = value
        return summary

    # ------------------------------------------------------------------
    # Subscription queries
    # ------------------------------------------------------------------

    async def _require_subscription(self, key: str) -> Subscription:
        subscription = await self.subscriptions.find_by_key(key)
        if subscription is None:
            raise NotFoundError(
                f"Subscription with key '{key}' not found", entity="subscription", key=key
            )
        return subscription

    async def get_value_for_subscription(self, subscription_key: str, feature_key: str) -> str:
        """
        Resolve one feature for a single subscription.

        A subscription that is not live resolves to the feature default.
        """
        subscription = await self._require_subscription(subscription_key)
        feature = await self.features.find_by_key(feature_key)
        if feature is None:
            raise NotFoundError(
                f"Feature with key '{feature_key}' not found", entity="feature", key=feature_key
            )
        if not subscription.is_entitled:
            return feature.default_value

        plan = (await self._load_plans({subscription.plan_id})).get(subscription.plan_id)
        return self.resolver.resolve(feature, plan, subscription, at=self.clock())

    async def get_all_features_for_subscription(self, subscription_key: str) -> dict[str, str]:
        subscription = await self._require_subscription(subscription_key)
        plan = (await self._load_plans({subscription.plan_id})).get(subscription.plan_id)
        if plan is None:
            raise NotFoundError(
                f"Plan for subscription '{subscription_key}' not found",
                entity="plan",
                key=subscription.plan_id,
            )
        product = await self.products.find_by_id(plan.product_id)
        if product is None:
            raise NotFoundError(
                f"Product for subscription '{subscription_key}' not found",
                entity="product",
                key=plan.product_id,
            )
        features = await self._load_product_features(product)
        if not subscription.is_entitled:
            return {feature.key: feature.default_value for feature in features}
        return self.resolver.resolve_all(
            features, {plan.id: plan}, [subscription], at=self.clock()
        )
