"""
Subscrio subscription billing core.

Provides:
- Product catalog: features, products, plans and billing cycles
- Subscription lifecycle with renewal and expiry transitions
- Feature value resolution and entitlement checks
- Payment provider webhook reconciliation
- Declarative catalog sync from configuration documents
"""

from subscrio.catalog.sync import CatalogConfig, CatalogSyncReport, CatalogSyncService
from subscrio.client import Subscrio
from subscrio.core.billing_cycle import DurationUnit, next_period_end
from subscrio.entitlements.resolver import FeatureValueResolver, order_subscriptions
from subscrio.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    ConflictError,
    DomainError,
    NotFoundError,
    SubscriptionStateError,
    SubscrioError,
    ValidationError,
)
from subscrio.reconciliation.service import ReconciliationOutcome

__version__ = "0.1.0"

__all__ = [
    "Subscrio",
    "CatalogConfig",
    "CatalogSyncReport",
    "CatalogSyncService",
    "DurationUnit",
    "next_period_end",
    "FeatureValueResolver",
    "order_subscriptions",
    "ReconciliationOutcome",
    "SubscrioError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyConflictError",
    "DomainError",
    "SubscriptionStateError",
    "ConfigurationError",
]
