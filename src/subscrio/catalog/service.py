"""
Catalog management service.

Creates and maintains features, products, plans and billing cycles. Every
save that can change a resolved feature value invalidates the feature
checker's lookup cache.
"""

from typing import Any

import structlog

from subscrio.catalog.models import (
    BillingCycle,
    CatalogStatus,
    Feature,
    Plan,
    Product,
    ProductStatus,
)
from subscrio.catalog.validators import FeatureValueType, parse_value_type
from subscrio.core.billing_cycle import DurationUnit, validate_duration
from subscrio.core.models import validate_key
from subscrio.entitlements.cache import FeatureLookupCache
from subscrio.exceptions import ConflictError, DomainError, NotFoundError
from subscrio.repositories.base import (
    BillingCycleRepository,
    FeatureRepository,
    PlanRepository,
    ProductRepository,
    SubscriptionRepository,
)

logger = structlog.get_logger(__name__)


class CatalogService:
    """Manage the product catalog."""

    def __init__(
        self,
        features: FeatureRepository,
        products: ProductRepository,
        plans: PlanRepository,
        billing_cycles: BillingCycleRepository,
        subscriptions: SubscriptionRepository,
        cache: FeatureLookupCache | None = None,
    ) -> None:
        self.features = features
        self.products = products
        self.plans = plans
        self.billing_cycles = billing_cycles
        self.subscriptions = subscriptions
        self.cache = cache

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _require_feature(self, key: str) -> Feature:
        feature = await self.features.find_by_key(key)
        if feature is None:
            raise NotFoundError(f"Feature with key '{key}' not found", entity="feature", key=key)
        return feature

    async def _require_product(self, key: str) -> Product:
        product = await self.products.find_by_key(key)
        if product is None:
            raise NotFoundError(f"Product with key '{key}' not found", entity="product", key=key)
        return product

    async def _require_plan(self, key: str) -> Plan:
        plan = await self.plans.find_by_key(key)
        if plan is None:
            raise NotFoundError(f"Plan with key '{key}' not found", entity="plan", key=key)
        return plan

    async def _require_billing_cycle(self, key: str) -> BillingCycle:
        cycle = await self.billing_cycles.find_by_key(key)
        if cycle is None:
            raise NotFoundError(
                f"Billing cycle with key '{key}' not found", entity="billing_cycle", key=key
            )
        return cycle

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    async def _save_plan(self, plan: Plan) -> Plan:
        saved = await self.plans.save(plan)
        if self.cache is not None:
            self.cache.invalidate_plan(plan.id)
        return saved

    async def _save_product(self, product: Product) -> Product:
        saved = await self.products.save(product)
        if self.cache is not None:
            self.cache.invalidate_product(product.id)
        return saved

    async def _save_feature(self, feature: Feature) -> Feature:
        saved = await self.features.save(feature)
        if self.cache is not None:
            self.cache.invalidate_features()
        return saved

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    async def create_feature(
        self,
        key: str,
        display_name: str,
        value_type: FeatureValueType | str,
        default_value: str,
        description: str | None = None,
        group_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Feature:
        validate_key(key)
        if await self.features.exists(key):
            raise ConflictError(
                f"Feature with key '{key}' already exists", entity="feature", key=key
            )

        feature = Feature(
            key=key,
            display_name=display_name,
            value_type=parse_value_type(value_type),
            default_value=default_value,
            description=description,
            group_name=group_name,
            metadata=metadata or {},
        )
        await self._save_feature(feature)
        logger.info("Feature created", feature_key=key, value_type=feature.value_type.value)
        return feature

    async def update_feature(
        self,
        key: str,
        display_name: str | None = None,
        default_value: str | None = None,
        description: str | None = None,
        group_name: str | None = None,
    ) -> Feature:
        feature = await self._require_feature(key)
        if display_name is not None:
            feature.update_display_name(display_name)
        if default_value is not None:
            feature.update_default_value(default_value)
        if description is not None:
            feature.description = description
        if group_name is not None:
            feature.group_name = group_name
        feature.touch()
        await self._save_feature(feature)
        logger.info("Feature updated", feature_key=key)
        return feature

    async def get_feature(self, key: str) -> Feature | None:
        return await self.features.find_by_key(key)

    async def list_features(self, filters: dict[str, Any] | None = None) -> list[Feature]:
        return await self.features.find_all(filters)

    async def get_features_by_product(self, product_key: str) -> list[Feature]:
        product = await self._require_product(product_key)
        return await self.features.find_by_product(product.id)

    async def archive_feature(self, key: str) -> Feature:
        feature = await self._require_feature(key)
        feature.archive()
        await self._save_feature(feature)
        logger.info("Feature archived", feature_key=key)
        return feature

    async def unarchive_feature(self, key: str) -> Feature:
        feature = await self._require_feature(key)
        feature.unarchive()
        await self._save_feature(feature)
        return feature

    async def delete_feature(self, key: str) -> None:
        """
        Hard-delete an archived feature with no remaining references.

        Raises:
            NotFoundError: Feature does not exist
            DomainError: Feature is active, or still referenced by a product,
                a plan value or a subscription override
        """
        feature = await self._require_feature(key)
        if not feature.can_delete():
            raise DomainError(
                f"Cannot delete active feature '{key}'. Archive it first.",
                context={"feature_key": key},
            )
        if await self.features.has_product_associations(feature.id):
            raise DomainError(
                f"Cannot delete feature '{key}'. It is associated with products.",
                context={"feature_key": key},
                recovery_hint="Dissociate the feature from all products first",
            )
        if await self.features.has_plan_feature_values(feature.id):
            raise DomainError(
                f"Cannot delete feature '{key}'. It has plan feature values.",
                context={"feature_key": key},
                recovery_hint="Remove the feature value from all plans first",
            )
        if await self.features.has_subscription_overrides(feature.id):
            raise DomainError(
                f"Cannot delete feature '{key}'. It has subscription overrides.",
                context={"feature_key": key},
                recovery_hint="Remove the override from all subscriptions first",
            )

        await self.features.delete(feature.id)
        if self.cache is not None:
            self.cache.invalidate_features()
        logger.info("Feature deleted", feature_key=key)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def create_product(
        self,
        key: str,
        display_name: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Product:
        validate_key(key)
        if await self.products.exists(key):
            raise ConflictError(
                f"Product with key '{key}' already exists", entity="product", key=key
            )
        product = Product(
            key=key, display_name=display_name, description=description, metadata=metadata or {}
        )
        await self._save_product(product)
        logger.info("Product created", product_key=key)
        return product

    async def update_product(
        self, key: str, display_name: str | None = None, description: str | None = None
    ) -> Product:
        product = await self._require_product(key)
        if display_name is not None:
            product.update_display_name(display_name)
        if description is not None:
            product.description = description
            product.touch()
        await self._save_product(product)
        return product

    async def get_product(self, key: str) -> Product | None:
        return await self.products.find_by_key(key)

    async def list_products(self, filters: dict[str, Any] | None = None) -> list[Product]:
        return await self.products.find_all(filters)

    async def set_product_status(self, key: str, status: ProductStatus | str) -> Product:
        """Activate, deactivate, archive or unarchive a product."""
        product = await self._require_product(key)
        {
            ProductStatus.ACTIVE: product.activate,
            ProductStatus.INACTIVE: product.deactivate,
            ProductStatus.ARCHIVED: product.archive,
        }[ProductStatus(status)]()
        await self._save_product(product)
        logger.info("Product status changed", product_key=key, status=product.status.value)
        return product

    async def archive_product(self, key: str) -> Product:
        return await self.set_product_status(key, ProductStatus.ARCHIVED)

    async def unarchive_product(self, key: str) -> Product:
        return await self.set_product_status(key, ProductStatus.ACTIVE)

    async def delete_product(self, key: str) -> None:
        product = await self._require_product(key)
        if not product.can_delete():
            raise DomainError(
                f"Cannot delete active product '{key}'. Archive it first.",
                context={"product_key": key},
            )
        if await self.products.has_plans(product.id):
            raise DomainError(
                f"Cannot delete product '{key}'. It still has plans.",
                context={"product_key": key},
                recovery_hint="Delete the product's plans first",
            )
        await self.products.delete(product.id)
        if self.cache is not None:
            self.cache.invalidate_product(product.id)
        logger.info("Product deleted", product_key=key)

    async def associate_feature(self, product_key: str, feature_key: str) -> Product:
        product = await self._require_product(product_key)
        feature = await self._require_feature(feature_key)
        if product.associate_feature(feature.id):
            await self._save_product(product)
            logger.info("Feature associated", product_key=product_key, feature_key=feature_key)
        return product

    async def dissociate_feature(self, product_key: str, feature_key: str) -> Product:
        product = await self._require_product(product_key)
        feature = await self._require_feature(feature_key)
        if product.dissociate_feature(feature.id):
            await self._save_product(product)
            logger.info("Feature dissociated", product_key=product_key, feature_key=feature_key)
        return product

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def create_plan(
        self,
        product_key: str,
        key: str,
        display_name: str,
        description: str | None = None,
        on_expire_transition_to_billing_cycle_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Plan:
        validate_key(key)
        product = await self._require_product(product_key)
        if await self.plans.exists(key):
            raise ConflictError(f"Plan with key '{key}' already exists", entity="plan", key=key)
        if on_expire_transition_to_billing_cycle_key is not None:
            await self._require_billing_cycle(on_expire_transition_to_billing_cycle_key)

        plan = Plan(
            key=key,
            product_id=product.id,
            display_name=display_name,
            description=description,
            on_expire_transition_to_billing_cycle_key=on_expire_transition_to_billing_cycle_key,
            metadata=metadata or {},
        )
        await self._save_plan(plan)
        logger.info("Plan created", plan_key=key, product_key=product_key)
        return plan

    async def update_plan(
        self, key: str, display_name: str | None = None, description: str | None = None
    ) -> Plan:
        plan = await self._require_plan(key)
        if display_name is not None:
            plan.update_display_name(display_name)
        if description is not None:
            plan.description = description
            plan.touch()
        await self._save_plan(plan)
        return plan

    async def get_plan(self, key: str) -> Plan | None:
        return await self.plans.find_by_key(key)

    async def list_plans(self, product_key: str | None = None) -> list[Plan]:
        if product_key is None:
            return await self.plans.find_all()
        product = await self._require_product(product_key)
        return await self.plans.find_by_product(product.id)

    async def set_plan_transition(self, plan_key: str, billing_cycle_key: str | None) -> Plan:
        """Set (or clear) the billing cycle a plan's subscriptions move to on expiry."""
        plan = await self._require_plan(plan_key)
        if billing_cycle_key is not None:
            await self._require_billing_cycle(billing_cycle_key)
        plan.set_transition_target(billing_cycle_key)
        await self._save_plan(plan)
        logger.info("Plan transition set", plan_key=plan_key, billing_cycle_key=billing_cycle_key)
        return plan

    async def archive_plan(self, key: str) -> Plan:
        plan = await self._require_plan(key)
        plan.archive()
        await self._save_plan(plan)
        logger.info("Plan archived", plan_key=key)
        return plan

    async def unarchive_plan(self, key: str) -> Plan:
        plan = await self._require_plan(key)
        plan.unarchive()
        await self._save_plan(plan)
        return plan

    async def delete_plan(self, key: str) -> None:
        plan = await self._require_plan(key)
        if not plan.can_delete():
            raise DomainError(
                f"Cannot delete active plan '{key}'. Archive it first.",
                context={"plan_key": key},
            )
        if await self.plans.has_billing_cycles(plan.id):
            raise DomainError(
                f"Cannot delete plan '{key}'. It still has billing cycles.",
                context={"plan_key": key},
                recovery_hint="Delete the plan's billing cycles first",
            )
        if await self.subscriptions.has_subscriptions_for_plan(plan.id):
            raise DomainError(
                f"Cannot delete plan '{key}'. It has subscriptions.",
                context={"plan_key": key},
            )
        await self.plans.delete(plan.id)
        if self.cache is not None:
            self.cache.invalidate_plan(plan.id)
        logger.info("Plan deleted", plan_key=key)

    async def set_plan_feature_value(self, plan_key: str, feature_key: str, value: str) -> Plan:
        """
        Set a plan's value for a feature.

        Raises:
            NotFoundError: Plan or feature does not exist
            DomainError: Feature is not associated with the plan's product
            ValidationError: Value does not match the feature type
        """
        plan = await self._require_plan(plan_key)
        feature = await self._require_feature(feature_key)
        product = await self.products.find_by_id(plan.product_id)
        if product is None or feature.id not in product.feature_ids:
            raise DomainError(
                f"Feature '{feature_key}' is not associated with the product of plan '{plan_key}'",
                context={"plan_key": plan_key, "feature_key": feature_key},
                recovery_hint="Associate the feature with the product first",
            )
        plan.set_feature_value(feature, value)
        await self._save_plan(plan)
        logger.info("Plan feature value set", plan_key=plan_key, feature_key=feature_key)
        return plan

    async def remove_plan_feature_value(self, plan_key: str, feature_key: str) -> Plan:
        plan = await self._require_plan(plan_key)
        feature = await self._require_feature(feature_key)
        if plan.remove_feature_value(feature.id):
            await self._save_plan(plan)
            logger.info("Plan feature value removed", plan_key=plan_key, feature_key=feature_key)
        return plan

    async def get_plan_feature_value(self, plan_key: str, feature_key: str) -> str | None:
        plan = await self._require_plan(plan_key)
        feature = await self._require_feature(feature_key)
        return plan.get_feature_value(feature.id)

    # ------------------------------------------------------------------
    # Billing cycles
    # ------------------------------------------------------------------

    async def create_billing_cycle(
        self,
        plan_key: str,
        key: str,
        display_name: str,
        duration_unit: DurationUnit | str,
        duration_value: int | None = None,
        external_price_id: str | None = None,
        description: str | None = None,
    ) -> BillingCycle:
        """
        Create a billing cycle for a plan.

        Raises:
            ValidationError: Duration is inconsistent or key is malformed
            NotFoundError: Plan does not exist
            ConflictError: Key or external price id already in use
        """
        validate_key(key)
        unit = validate_duration(duration_unit, duration_value)
        plan = await self._require_plan(plan_key)
        if await self.billing_cycles.exists(key):
            raise ConflictError(
                f"Billing cycle with key '{key}' already exists", entity="billing_cycle", key=key
            )
        if external_price_id is not None:
            await self._ensure_price_unused(external_price_id)

        cycle = BillingCycle(
            key=key,
            plan_id=plan.id,
            display_name=display_name,
            description=description,
            duration_unit=unit,
            duration_value=duration_value,
            external_price_id=external_price_id,
        )
        await self.billing_cycles.save(cycle)
        logger.info(
            "Billing cycle created",
            billing_cycle_key=key,
            plan_key=plan_key,
            duration_unit=unit.value,
            duration_value=duration_value,
        )
        return cycle

    async def _ensure_price_unused(self, price_id: str, cycle_id: str | None = None) -> None:
        existing = await self.billing_cycles.find_by_external_price_id(price_id)
        if existing is not None and existing.id != cycle_id:
            raise ConflictError(
                f"External price id '{price_id}' is already mapped to billing cycle '{existing.key}'",
                entity="billing_cycle",
                key=price_id,
            )

    async def get_billing_cycle(self, key: str) -> BillingCycle | None:
        return await self.billing_cycles.find_by_key(key)

    async def list_billing_cycles(self, plan_key: str | None = None) -> list[BillingCycle]:
        if plan_key is None:
            return await self.billing_cycles.find_all()
        plan = await self._require_plan(plan_key)
        return await self.billing_cycles.find_by_plan(plan.id)

    async def update_billing_cycle(
        self, key: str, display_name: str | None = None, description: str | None = None
    ) -> BillingCycle:
        """Update descriptive fields. Duration is fixed once a cycle exists."""
        cycle = await self._require_billing_cycle(key)
        if display_name is not None:
            cycle.update_display_name(display_name)
        if description is not None:
            cycle.description = description
            cycle.touch()
        await self.billing_cycles.save(cycle)
        return cycle

    async def set_billing_cycle_price(self, key: str, external_price_id: str | None) -> BillingCycle:
        cycle = await self._require_billing_cycle(key)
        if external_price_id is not None:
            await self._ensure_price_unused(external_price_id, cycle.id)
        cycle.set_external_price_id(external_price_id)
        await self.billing_cycles.save(cycle)
        return cycle

    async def archive_billing_cycle(self, key: str) -> BillingCycle:
        cycle = await self._require_billing_cycle(key)
        cycle.archive()
        await self.billing_cycles.save(cycle)
        logger.info("Billing cycle archived", billing_cycle_key=key)
        return cycle

    async def unarchive_billing_cycle(self, key: str) -> BillingCycle:
        cycle = await self._require_billing_cycle(key)
        cycle.unarchive()
        await self.billing_cycles.save(cycle)
        return cycle

    async def delete_billing_cycle(self, key: str) -> None:
        cycle = await self._require_billing_cycle(key)
        if cycle.status is not CatalogStatus.ARCHIVED:
            raise DomainError(
                f"Cannot delete active billing cycle '{key}'. Archive it first.",
                context={"billing_cycle_key": key},
            )
        if await self.subscriptions.has_subscriptions_for_billing_cycle(cycle.id):
            raise DomainError(
                f"Cannot delete billing cycle '{key}'. It has subscriptions.",
                context={"billing_cycle_key": key},
            )
        if await self.plans.has_transition_references(key):
            raise DomainError(
                f"Cannot delete billing cycle '{key}'. Plans transition to it on expiry.",
                context={"billing_cycle_key": key},
                recovery_hint="Clear the transition on the referencing plans first",
            )
        await self.billing_cycles.delete(cycle.id)
        logger.info("Billing cycle deleted", billing_cycle_key=key)
