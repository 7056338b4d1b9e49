"""Product catalog: features, products, plans and billing cycles."""

from subscrio.catalog.models import (
    BillingCycle,
    CatalogStatus,
    Feature,
    Plan,
    PlanFeatureValue,
    Product,
    ProductStatus,
)
from subscrio.catalog.validators import FeatureValueType, validate_feature_value

__all__ = [
    "BillingCycle",
    "CatalogStatus",
    "Feature",
    "FeatureValueType",
    "Plan",
    "PlanFeatureValue",
    "Product",
    "ProductStatus",
    "validate_feature_value",
]
