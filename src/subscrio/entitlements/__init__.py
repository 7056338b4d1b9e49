"""Feature value resolution and entitlement checks."""

from subscrio.entitlements.cache import FeatureLookupCache
from subscrio.entitlements.resolver import FeatureValueResolver, order_subscriptions

__all__ = ["FeatureLookupCache", "FeatureValueResolver", "order_subscriptions"]
