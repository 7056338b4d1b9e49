"""
Declarative catalog sync.

Reconciles the stored catalog with a configuration document listing
features and products, with each product's plans and billing cycles nested
inside it. Entities are matched by key. Missing ones are created, changed
ones updated and the ``archived`` flag is honoured. Entities present in the
store but absent from the document are left alone and counted as ignored.

The document uses camelCase keys, as exported by the admin tooling::

    {
      "version": "1.0",
      "features": [{"key": "seats", "displayName": "Seats",
                    "valueType": "numeric", "defaultValue": "1"}],
      "products": [{"key": "acme", "displayName": "Acme", "features": ["seats"],
                    "plans": [{"key": "team", "displayName": "Team",
                               "featureValues": {"seats": "10"},
                               "billingCycles": [{"key": "team-monthly",
                                                  "displayName": "Monthly",
                                                  "durationUnit": "months",
                                                  "durationValue": 1}]}]}]
    }

Failures on one entity are recorded in the report and do not stop the sync.
"""

from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from subscrio.catalog.models import CatalogStatus, Plan, ProductStatus
from subscrio.catalog.service import CatalogService
from subscrio.catalog.validators import FeatureValueType, validate_feature_value
from subscrio.core.billing_cycle import DurationUnit, validate_duration
from subscrio.core.models import validate_key
from subscrio.exceptions import SubscrioError, ValidationError

logger = structlog.get_logger(__name__)


# ============================================================
# Configuration document
# ============================================================


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    @field_validator("key", check_fields=False)
    @classmethod
    def _check_key(cls, v: str) -> str:
        try:
            return validate_key(v)
        except ValidationError as e:
            raise ValueError(e.message) from None


class BillingCycleConfig(_ConfigModel):
    key: str
    display_name: str
    description: str | None = None
    duration_unit: DurationUnit
    duration_value: int | None = None
    external_price_id: str | None = None
    archived: bool | None = None

    @model_validator(mode="after")
    def _check_duration(self) -> "BillingCycleConfig":
        try:
            validate_duration(self.duration_unit, self.duration_value)
        except ValidationError as e:
            raise ValueError(e.message) from None
        return self


class PlanConfig(_ConfigModel):
    key: str
    display_name: str
    description: str | None = None
    on_expire_transition_to_billing_cycle_key: str | None = None
    metadata: dict[str, Any] | None = None
    archived: bool | None = None
    feature_values: dict[str, str] | None = None
    billing_cycles: list[BillingCycleConfig] = Field(default_factory=list)


class FeatureConfig(_ConfigModel):
    key: str
    display_name: str
    description: str | None = None
    value_type: FeatureValueType
    default_value: str
    group_name: str | None = None
    metadata: dict[str, Any] | None = None
    archived: bool | None = None

    @model_validator(mode="after")
    def _check_default_value(self) -> "FeatureConfig":
        try:
            validate_feature_value(self.default_value, self.value_type)
        except ValidationError as e:
            raise ValueError(e.message) from None
        return self


class ProductConfig(_ConfigModel):
    key: str
    display_name: str
    description: str | None = None
    metadata: dict[str, Any] | None = None
    archived: bool | None = None
    features: list[str] | None = None
    plans: list[PlanConfig] = Field(default_factory=list)


class CatalogConfig(_ConfigModel):
    """Root of a catalog configuration document."""

    version: str = Field(min_length=1, description="Document schema version")
    features: list[FeatureConfig] = Field(default_factory=list)
    products: list[ProductConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "CatalogConfig":
        problems: list[str] = []
        features = {}
        for feature in self.features:
            if feature.key in features:
                problems.append(f"Duplicate feature key '{feature.key}'")
            features[feature.key] = feature

        product_keys: set[str] = set()
        plan_keys: set[str] = set()
        cycle_keys: set[str] = set()
        for product in self.products:
            if product.key in product_keys:
                problems.append(f"Duplicate product key '{product.key}'")
            product_keys.add(product.key)

            associated = set(product.features or [])
            for feature_key in sorted(associated - features.keys()):
                problems.append(
                    f"Feature '{feature_key}' referenced by product '{product.key}' is not defined"
                )

            product_cycles = {cycle.key for plan in product.plans for cycle in plan.billing_cycles}
            for plan in product.plans:
                if plan.key in plan_keys:
                    problems.append(f"Duplicate plan key '{plan.key}'")
                plan_keys.add(plan.key)

                for cycle in plan.billing_cycles:
                    if cycle.key in cycle_keys:
                        problems.append(f"Duplicate billing cycle key '{cycle.key}'")
                    cycle_keys.add(cycle.key)

                for feature_key, value in (plan.feature_values or {}).items():
                    if feature_key not in associated:
                        problems.append(
                            f"Feature '{feature_key}' in plan '{plan.key}' is not associated "
                            f"with product '{product.key}'"
                        )
                        continue
                    try:
                        validate_feature_value(value, features[feature_key].value_type)
                    except ValidationError as e:
                        problems.append(f"Plan '{plan.key}' value for '{feature_key}': {e.message}")

                target = plan.on_expire_transition_to_billing_cycle_key
                if target is not None and target not in product_cycles:
                    problems.append(
                        f"Transition target '{target}' of plan '{plan.key}' is not a billing "
                        f"cycle of product '{product.key}'"
                    )

        if problems:
            raise ValueError("; ".join(problems))
        return self


# ============================================================
# Report
# ============================================================


class EntityCounts(BaseModel):
    features: int = 0
    products: int = 0
    plans: int = 0
    billing_cycles: int = 0


class SyncIssue(BaseModel):
    entity_type: str
    key: str
    message: str


class CatalogSyncReport(BaseModel):
    """Outcome of one sync run."""

    created: EntityCounts = Field(default_factory=EntityCounts)
    updated: EntityCounts = Field(default_factory=EntityCounts)
    archived: EntityCounts = Field(default_factory=EntityCounts)
    unarchived: EntityCounts = Field(default_factory=EntityCounts)
    ignored: EntityCounts = Field(default_factory=EntityCounts)
    errors: list[SyncIssue] = Field(default_factory=list)
    warnings: list[SyncIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


# Report counter name -> issue entity type
_ENTITY_TYPES = {
    "features": "feature",
    "products": "product",
    "plans": "plan",
    "billing_cycles": "billing_cycle",
}


def _count(counts: EntityCounts, entity: str) -> None:
    setattr(counts, entity, getattr(counts, entity) + 1)


def _differs(wanted: str | None, current: str | None) -> bool:
    """A field left out of the document never counts as a change."""
    return wanted is not None and wanted != current


# ============================================================
# Service
# ============================================================


class CatalogSyncService:
    """Apply catalog configuration documents through the catalog service."""

    def __init__(self, catalog: CatalogService) -> None:
        self.catalog = catalog

    @staticmethod
    def parse(document: str | bytes | Mapping[str, Any]) -> CatalogConfig:
        """
        Validate a configuration document.

        Raises:
            ValidationError: The document is malformed or references
                undefined features or billing cycles
        """
        try:
            if isinstance(document, (str, bytes)):
                return CatalogConfig.model_validate_json(document)
            return CatalogConfig.model_validate(document)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid catalog configuration: {e.error_count()} error(s)",
                field="config",
                context={"errors": [err["msg"] for err in e.errors()]},
            ) from e

    async def sync_from_file(self, path: str | Path) -> CatalogSyncReport:
        """Load a JSON configuration document from disk and sync it."""
        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(
                f"Failed to read catalog configuration: {e}", field="path", value=str(path)
            ) from e
        return await self.sync(self.parse(content))

    async def sync(self, config: CatalogConfig | Mapping[str, Any]) -> CatalogSyncReport:
        """
        Bring the stored catalog in line with ``config``.

        Raises:
            ValidationError: The document is malformed
        """
        if not isinstance(config, CatalogConfig):
            config = self.parse(config)
        report = CatalogSyncReport()

        existing_features = {f.key: f for f in await self.catalog.list_features()}
        existing_products = {p.key: p for p in await self.catalog.list_products()}
        existing_plans = {p.key: p for p in await self.catalog.list_plans()}
        existing_cycles = {c.key: c for c in await self.catalog.list_billing_cycles()}

        plan_configs = [(product, plan) for product in config.products for plan in product.plans]
        cycle_configs = [(plan, cycle) for _, plan in plan_configs for cycle in plan.billing_cycles]
        report.ignored.features = len(existing_features.keys() - {f.key for f in config.features})
        report.ignored.products = len(existing_products.keys() - {p.key for p in config.products})
        report.ignored.plans = len(existing_plans.keys() - {p.key for _, p in plan_configs})
        report.ignored.billing_cycles = len(
            existing_cycles.keys() - {c.key for _, c in cycle_configs}
        )

        for feature in config.features:
            await self._guard(report, "features", feature.key, self._sync_feature(
                feature, existing_features.get(feature.key), report
            ))
        for product in config.products:
            await self._guard(report, "products", product.key, self._sync_product(
                product, existing_products.get(product.key), report
            ))
        for product, plan in plan_configs:
            await self._guard(report, "plans", plan.key, self._sync_plan(
                product, plan, existing_plans.get(plan.key), report
            ))
        for plan, cycle in cycle_configs:
            await self._guard(report, "billing_cycles", cycle.key, self._sync_billing_cycle(
                plan, cycle, existing_cycles.get(cycle.key), report
            ))
        # Transition targets may name cycles created above
        for _, plan in plan_configs:
            await self._guard(report, "plans", plan.key, self._sync_transition(plan))

        logger.info(
            "Catalog synced",
            version=config.version,
            created=report.created.model_dump(),
            updated=report.updated.model_dump(),
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    async def _guard(
        self, report: CatalogSyncReport, entity: str, key: str, step: Awaitable[None]
    ) -> None:
        try:
            await step
        except SubscrioError as e:
            logger.warning(
                "Catalog sync step failed", entity=entity, key=key, error_code=e.error_code
            )
            report.errors.append(
                SyncIssue(entity_type=_ENTITY_TYPES[entity], key=key, message=e.message)
            )

    async def _sync_archived(
        self,
        report: CatalogSyncReport,
        entity: str,
        key: str,
        wanted: bool | None,
        is_archived: bool,
        archive: Callable[[str], Awaitable[Any]],
        unarchive: Callable[[str], Awaitable[Any]],
    ) -> None:
        if wanted is True and not is_archived:
            await archive(key)
            _count(report.archived, entity)
        elif wanted is False and is_archived:
            await unarchive(key)
            _count(report.unarchived, entity)

    # Features

    async def _sync_feature(self, config: FeatureConfig, existing, report) -> None:
        catalog = self.catalog
        if existing is None:
            await catalog.create_feature(
                config.key,
                config.display_name,
                config.value_type,
                config.default_value,
                description=config.description,
                group_name=config.group_name,
                metadata=config.metadata,
            )
            _count(report.created, "features")
            await self._sync_archived(
                report, "features", config.key, config.archived, False,
                catalog.archive_feature, catalog.unarchive_feature,
            )
            return

        default_value = config.default_value
        if existing.value_type is not config.value_type:
            report.warnings.append(
                SyncIssue(
                    entity_type="feature",
                    key=config.key,
                    message=(
                        f"Value type of an existing feature cannot change "
                        f"({existing.value_type.value} -> {config.value_type.value})"
                    ),
                )
            )
            default_value = None

        if (
            config.display_name != existing.display_name
            or _differs(default_value, existing.default_value)
            or _differs(config.description, existing.description)
            or _differs(config.group_name, existing.group_name)
        ):
            await catalog.update_feature(
                config.key,
                display_name=config.display_name,
                default_value=default_value,
                description=config.description,
                group_name=config.group_name,
            )
            _count(report.updated, "features")

        await self._sync_archived(
            report, "features", config.key, config.archived,
            existing.status is CatalogStatus.ARCHIVED,
            catalog.archive_feature, catalog.unarchive_feature,
        )

    # Products

    async def _sync_product(self, config: ProductConfig, existing, report) -> None:
        catalog = self.catalog
        if existing is None:
            await catalog.create_product(
                config.key, config.display_name, description=config.description,
                metadata=config.metadata,
            )
            _count(report.created, "products")
            is_archived = False
        else:
            if config.display_name != existing.display_name or _differs(
                config.description, existing.description
            ):
                await catalog.update_product(
                    config.key, display_name=config.display_name, description=config.description
                )
                _count(report.updated, "products")
            is_archived = existing.status is ProductStatus.ARCHIVED

        await self._sync_archived(
            report, "products", config.key, config.archived, is_archived,
            catalog.archive_product, catalog.unarchive_product,
        )

        if config.features is not None:
            current = {f.key for f in await catalog.get_features_by_product(config.key)}
            wanted = set(config.features)
            for feature_key in config.features:
                if feature_key not in current:
                    await catalog.associate_feature(config.key, feature_key)
            for feature_key in sorted(current - wanted):
                await catalog.dissociate_feature(config.key, feature_key)

    # Plans

    async def _sync_plan(
        self, product: ProductConfig, config: PlanConfig, existing: Plan | None, report
    ) -> None:
        catalog = self.catalog
        if existing is None:
            await catalog.create_plan(
                product.key, config.key, config.display_name,
                description=config.description, metadata=config.metadata,
            )
            _count(report.created, "plans")
            is_archived = False
        else:
            owner = await catalog.get_product(product.key)
            if owner is None or existing.product_id != owner.id:
                raise ValidationError(
                    f"Plan '{config.key}' belongs to another product",
                    field="product",
                    value=product.key,
                )
            if config.display_name != existing.display_name or _differs(
                config.description, existing.description
            ):
                await catalog.update_plan(
                    config.key, display_name=config.display_name, description=config.description
                )
                _count(report.updated, "plans")
            is_archived = existing.status is CatalogStatus.ARCHIVED

        await self._sync_archived(
            report, "plans", config.key, config.archived, is_archived,
            catalog.archive_plan, catalog.unarchive_plan,
        )

        if config.feature_values is not None:
            await self._sync_plan_values(config)

    async def _sync_plan_values(self, config: PlanConfig) -> None:
        catalog = self.catalog
        plan = await catalog.get_plan(config.key)
        if plan is None:
            return
        keys_by_id = {f.id: f.key for f in await catalog.list_features()}
        current = {
            keys_by_id[pv.feature_id]: pv.value
            for pv in plan.feature_values
            if pv.feature_id in keys_by_id
        }
        wanted = config.feature_values or {}
        for feature_key, value in wanted.items():
            if current.get(feature_key) != value:
                await catalog.set_plan_feature_value(config.key, feature_key, value)
        for feature_key in sorted(current.keys() - wanted.keys()):
            await catalog.remove_plan_feature_value(config.key, feature_key)

    async def _sync_transition(self, config: PlanConfig) -> None:
        plan = await self.catalog.get_plan(config.key)
        target = config.on_expire_transition_to_billing_cycle_key
        if plan is not None and plan.on_expire_transition_to_billing_cycle_key != target:
            await self.catalog.set_plan_transition(config.key, target)

    # Billing cycles

    async def _sync_billing_cycle(
        self, plan: PlanConfig, config: BillingCycleConfig, existing, report
    ) -> None:
        catalog = self.catalog
        if existing is None:
            await catalog.create_billing_cycle(
                plan.key,
                config.key,
                config.display_name,
                config.duration_unit,
                config.duration_value,
                external_price_id=config.external_price_id,
                description=config.description,
            )
            _count(report.created, "billing_cycles")
            await self._sync_archived(
                report, "billing_cycles", config.key, config.archived, False,
                catalog.archive_billing_cycle, catalog.unarchive_billing_cycle,
            )
            return

        owner = await catalog.get_plan(plan.key)
        if owner is None or existing.plan_id != owner.id:
            raise ValidationError(
                f"Billing cycle '{config.key}' belongs to another plan",
                field="plan",
                value=plan.key,
            )
        if (
            existing.duration_unit is not config.duration_unit
            or existing.duration_value != config.duration_value
        ):
            report.warnings.append(
                SyncIssue(
                    entity_type="billing_cycle",
                    key=config.key,
                    message="Duration of an existing billing cycle cannot change",
                )
            )

        changed = False
        if config.display_name != existing.display_name or _differs(
            config.description, existing.description
        ):
            await catalog.update_billing_cycle(
                config.key, display_name=config.display_name, description=config.description
            )
            changed = True
        if _differs(config.external_price_id, existing.external_price_id):
            await catalog.set_billing_cycle_price(config.key, config.external_price_id)
            changed = True
        if changed:
            _count(report.updated, "billing_cycles")

        await self._sync_archived(
            report, "billing_cycles", config.key, config.archived,
            existing.status is CatalogStatus.ARCHIVED,
            catalog.archive_billing_cycle, catalog.unarchive_billing_cycle,
        )
