"""
Feature value resolution.

Precedence per feature, highest first:

1. the subscription's feature override
2. the plan's feature value
3. the feature default

A tier that carries a value fully shadows the tiers below it.
"""

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime

from subscrio.catalog.models import Feature, Plan
from subscrio.subscriptions.models import Subscription


def _timestamp(value: datetime | None) -> float:
    return value.timestamp() if value is not None else 0.0


def order_subscriptions(subscriptions: Iterable[Subscription]) -> list[Subscription]:
    """
    Canonical tie-break order for customers holding several subscriptions.

    Most recently activated first, then most recently created, then key
    ascending. ``resolve_all`` lets the first subscription in this order win.
    """
    by_key = sorted(subscriptions, key=lambda s: s.key)
    return sorted(
        by_key,
        key=lambda s: (_timestamp(s.activation_date), _timestamp(s.created_at)),
        reverse=True,
    )


class FeatureValueResolver:
    """Computes effective feature values from the resolution hierarchy."""

    def resolve(
        self,
        feature: Feature,
        plan: Plan | None = None,
        subscription: Subscription | None = None,
        at: datetime | None = None,
    ) -> str:
        """Resolve one feature for one (optional) plan and subscription."""
        if subscription is not None:
            override = subscription.get_feature_override(feature.id, at)
            if override is not None:
                return override.value

        if plan is not None:
            plan_value = plan.get_feature_value(feature.id)
            if plan_value is not None:
                return plan_value

        return feature.default_value

    def resolve_all(
        self,
        features: Iterable[Feature],
        plans_by_id: Mapping[str, Plan],
        subscriptions: Sequence[Subscription],
        at: datetime | None = None,
    ) -> dict[str, str]:
        """
        Resolve every feature across several subscriptions.

        For each feature the first subscription (in the given order) with an
        override wins; failing that, the first subscription whose plan has a
        value wins; failing that, the feature default applies.

        Args:
            features: Features to resolve
            plans_by_id: Plans referenced by the subscriptions, by plan id
            subscriptions: Subscriptions in tie-break order
            at: Reference time for ignoring expired overrides

        Returns:
            Mapping of feature key to resolved value
        """
        resolved: dict[str, str] = {}
        for feature in features:
            resolved[feature.key] = self._resolve_across(feature, plans_by_id, subscriptions, at)
        return resolved

    def _resolve_across(
        self,
        feature: Feature,
        plans_by_id: Mapping[str, Plan],
        subscriptions: Sequence[Subscription],
        at: datetime | None,
    ) -> str:
        for subscription in subscriptions:
            override = subscription.get_feature_override(feature.id, at)
            if override is not None:
                return override.value

        for subscription in subscriptions:
            plan = plans_by_id.get(subscription.plan_id)
            if plan is None:
                continue
            plan_value = plan.get_feature_value(feature.id)
            if plan_value is not None:
                return plan_value

        return feature.default_value
