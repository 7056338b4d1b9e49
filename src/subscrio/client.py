"""
Subscrio facade.

Wires the repositories, lookup cache and services together so a host
application constructs one object::

    subscrio = Subscrio()                       # in-memory repositories
    await subscrio.catalog.create_product("acme", "Acme")
    value = await subscrio.feature_checker.get_value_for_customer(
        "cust-1", "acme", "max-projects"
    )
"""

from collections.abc import Callable
from datetime import datetime

import structlog

from subscrio.catalog.service import CatalogService
from subscrio.catalog.sync import CatalogSyncService
from subscrio.config import SubscrioConfig, get_config
from subscrio.core.models import utcnow
from subscrio.customers.service import CustomerService
from subscrio.entitlements.cache import FeatureLookupCache
from subscrio.entitlements.resolver import FeatureValueResolver
from subscrio.entitlements.service import FeatureCheckerService
from subscrio.reconciliation.service import ReconciliationEngine
from subscrio.repositories.base import RepositoryBundle
from subscrio.repositories.memory import InMemoryRepositories
from subscrio.subscriptions.service import SubscriptionService

logger = structlog.get_logger(__name__)


class Subscrio:
    """Entry point bundling every service over one set of repositories."""

    def __init__(
        self,
        repositories: RepositoryBundle | None = None,
        config: SubscrioConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or get_config()
        self.repositories: RepositoryBundle = repositories or InMemoryRepositories()
        repos = self.repositories

        self.cache = FeatureLookupCache(self.config.cache)
        self.resolver = FeatureValueResolver()

        self.catalog = CatalogService(
            repos.features,
            repos.products,
            repos.plans,
            repos.billing_cycles,
            repos.subscriptions,
            cache=self.cache,
        )
        self.catalog_sync = CatalogSyncService(self.catalog)
        self.customers = CustomerService(repos.customers, repos.subscriptions)
        self.subscriptions = SubscriptionService(
            repos.subscriptions,
            repos.customers,
            repos.billing_cycles,
            repos.plans,
            repos.features,
            clock=clock,
        )
        self.feature_checker = FeatureCheckerService(
            repos.customers,
            repos.products,
            repos.features,
            repos.plans,
            repos.subscriptions,
            resolver=self.resolver,
            cache=self.cache,
            clock=clock,
        )
        self.reconciliation = ReconciliationEngine(
            repos.customers,
            repos.subscriptions,
            repos.billing_cycles,
            config=self.config.reconciliation,
            clock=clock,
        )
        logger.debug(
            "Subscrio initialized",
            cache_enabled=self.config.cache.enabled,
            ledger_ttl_seconds=self.config.reconciliation.ledger_ttl_seconds,
        )
