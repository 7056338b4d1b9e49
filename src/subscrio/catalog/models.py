"""
Catalog aggregates: features, products, plans and billing cycles.

Aggregates reference each other by id or key only. Services mutate them
through the command methods below, which keep each aggregate consistent.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from subscrio.catalog.validators import FeatureValueType, validate_feature_value
from subscrio.core.billing_cycle import DurationUnit, next_period_end, validate_duration
from subscrio.core.models import SubscrioBaseModel, utcnow
from subscrio.exceptions import DomainError


class CatalogStatus(str, Enum):
    """Status shared by features, plans and billing cycles."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class ProductStatus(str, Enum):
    """Product status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


def _require_display_name(name: str) -> str:
    if not name or not name.strip():
        raise DomainError("Display name cannot be empty")
    return name


class Feature(SubscrioBaseModel):
    """A named, typed capability with a default value."""

    key: str = Field(description="Immutable, globally unique feature key")
    display_name: str
    description: str | None = None
    value_type: FeatureValueType
    default_value: str
    group_name: str | None = None
    status: CatalogStatus = CatalogStatus.ACTIVE

    @model_validator(mode="after")
    def _check_default_value(self) -> "Feature":
        validate_feature_value(self.default_value, self.value_type)
        return self

    def archive(self) -> None:
        self.status = CatalogStatus.ARCHIVED
        self.touch()

    def unarchive(self) -> None:
        self.status = CatalogStatus.ACTIVE
        self.touch()

    def update_display_name(self, name: str) -> None:
        self.display_name = _require_display_name(name)
        self.touch()

    def update_default_value(self, value: str) -> None:
        self.default_value = validate_feature_value(value, self.value_type)
        self.touch()

    def can_delete(self) -> bool:
        return self.status is CatalogStatus.ARCHIVED


class Product(SubscrioBaseModel):
    """A sellable product owning a set of feature associations."""

    key: str
    display_name: str
    description: str | None = None
    status: ProductStatus = ProductStatus.ACTIVE
    feature_ids: list[str] = Field(default_factory=list)

    def activate(self) -> None:
        self.status = ProductStatus.ACTIVE
        self.touch()

    def deactivate(self) -> None:
        self.status = ProductStatus.INACTIVE
        self.touch()

    def archive(self) -> None:
        self.status = ProductStatus.ARCHIVED
        self.touch()

    def unarchive(self) -> None:
        self.status = ProductStatus.ACTIVE
        self.touch()

    def update_display_name(self, name: str) -> None:
        self.display_name = _require_display_name(name)
        self.touch()

    def associate_feature(self, feature_id: str) -> bool:
        if feature_id in self.feature_ids:
            return False
        self.feature_ids.append(feature_id)
        self.touch()
        return True

    def dissociate_feature(self, feature_id: str) -> bool:
        if feature_id not in self.feature_ids:
            return False
        self.feature_ids.remove(feature_id)
        self.touch()
        return True

    def can_delete(self) -> bool:
        return self.status is ProductStatus.ARCHIVED


class PlanFeatureValue(BaseModel):
    """A plan-level override of a feature's default value."""

    feature_id: str
    value: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Plan(SubscrioBaseModel):
    """A bundle of feature values belonging to one product."""

    key: str
    product_id: str
    display_name: str
    description: str | None = None
    status: CatalogStatus = CatalogStatus.ACTIVE
    on_expire_transition_to_billing_cycle_key: str | None = None
    feature_values: list[PlanFeatureValue] = Field(default_factory=list)

    def archive(self) -> None:
        self.status = CatalogStatus.ARCHIVED
        self.touch()

    def unarchive(self) -> None:
        self.status = CatalogStatus.ACTIVE
        self.touch()

    def update_display_name(self, name: str) -> None:
        self.display_name = _require_display_name(name)
        self.touch()

    def set_transition_target(self, billing_cycle_key: str | None) -> None:
        self.on_expire_transition_to_billing_cycle_key = billing_cycle_key
        self.touch()

    def set_feature_value(self, feature: Feature, value: str) -> None:
        """Set the plan value for a feature, validated against its type."""
        validate_feature_value(value, feature.value_type)
        now = utcnow()
        for existing in self.feature_values:
            if existing.feature_id == feature.id:
                existing.value = value
                existing.updated_at = now
                break
        else:
            self.feature_values.append(
                PlanFeatureValue(feature_id=feature.id, value=value, created_at=now, updated_at=now)
            )
        self.touch(now)

    def remove_feature_value(self, feature_id: str) -> bool:
        remaining = [fv for fv in self.feature_values if fv.feature_id != feature_id]
        if len(remaining) == len(self.feature_values):
            return False
        self.feature_values = remaining
        self.touch()
        return True

    def get_feature_value(self, feature_id: str) -> str | None:
        for feature_value in self.feature_values:
            if feature_value.feature_id == feature_id:
                return feature_value.value
        return None

    def can_delete(self) -> bool:
        return self.status is CatalogStatus.ARCHIVED


class BillingCycle(SubscrioBaseModel):
    """A recurring (or perpetual) billing period attached to a plan."""

    key: str
    plan_id: str
    display_name: str
    description: str | None = None
    duration_unit: DurationUnit
    duration_value: int | None = None
    external_price_id: str | None = Field(
        None, description="Payment provider price id mapped to this cycle"
    )
    status: CatalogStatus = CatalogStatus.ACTIVE

    @model_validator(mode="after")
    def _check_duration(self) -> "BillingCycle":
        validate_duration(self.duration_unit, self.duration_value)
        return self

    @property
    def is_forever(self) -> bool:
        return self.duration_unit is DurationUnit.FOREVER

    def calculate_next_period_end(self, start: datetime) -> datetime | None:
        return next_period_end(start, self.duration_unit, self.duration_value)

    def archive(self) -> None:
        self.status = CatalogStatus.ARCHIVED
        self.touch()

    def unarchive(self) -> None:
        self.status = CatalogStatus.ACTIVE
        self.touch()

    def update_display_name(self, name: str) -> None:
        self.display_name = _require_display_name(name)
        self.touch()

    def set_external_price_id(self, price_id: str | None) -> None:
        self.external_price_id = price_id
        self.touch()

    def can_delete(self) -> bool:
        return self.status is CatalogStatus.ARCHIVED
