"""Subscription aggregate and lifecycle management."""

from subscrio.subscriptions.models import (
    FeatureOverride,
    OverrideType,
    Subscription,
    SubscriptionStatus,
)

__all__ = ["FeatureOverride", "OverrideType", "Subscription", "SubscriptionStatus"]
