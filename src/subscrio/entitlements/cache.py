"""
Plan and feature lookup cache for the feature checker.

Entries are keyed by plan id and by product id, live at most ``ttl_seconds``
and are bounded by ``max_entries`` per table. Writers invalidate on save,
so a stale read is possible only for writes that bypass the catalog service.
"""

import threading
import time
from collections.abc import Callable, Iterable, MutableMapping
from datetime import UTC, datetime
from typing import Any

import structlog
from cachetools import TTLCache

from subscrio.catalog.models import Feature, Plan
from subscrio.config import FeatureCacheConfig

logger = structlog.get_logger(__name__)


class FeatureCacheMetrics:
    """Metrics collector for cache operations."""

    def __init__(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.invalidations = 0
        self.last_reset = datetime.now(UTC)

    def record_hit(self, count: int = 1) -> None:
        self.hits += count

    def record_miss(self, count: int = 1) -> None:
        self.misses += count

    def record_set(self, count: int = 1) -> None:
        self.sets += count

    def record_invalidation(self) -> None:
        self.invalidations += 1

    def get_hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "hit_rate": self.get_hit_rate(),
            "period_start": self.last_reset.isoformat(),
        }

    def reset(self) -> None:
        """Reset metrics."""
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.invalidations = 0
        self.last_reset = datetime.now(UTC)


class FeatureLookupCache:
    """Thread-safe, bounded, expiring cache of plans and product feature sets."""

    def __init__(
        self,
        config: FeatureCacheConfig | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or FeatureCacheConfig()
        self.metrics = FeatureCacheMetrics()
        self._lock = threading.RLock()

        self._plans: MutableMapping[str, Plan]
        self._product_features: MutableMapping[str, list[Feature]]
        if self.config.enabled:
            self._plans = TTLCache(
                maxsize=self.config.max_entries, ttl=self.config.ttl_seconds, timer=timer
            )
            self._product_features = TTLCache(
                maxsize=self.config.max_entries, ttl=self.config.ttl_seconds, timer=timer
            )
        else:
            self._plans = {}
            self._product_features = {}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # Plans

    def get_plans(self, plan_ids: Iterable[str]) -> tuple[dict[str, Plan], set[str]]:
        """
        Look up several plans at once.

        Returns:
            Cached plans by id, and the ids that missed
        """
        found: dict[str, Plan] = {}
        missing: set[str] = set()
        with self._lock:
            for plan_id in plan_ids:
                plan = self._plans.get(plan_id) if self.enabled else None
                if plan is None:
                    missing.add(plan_id)
                else:
                    found[plan_id] = plan.model_copy(deep=True)
            self.metrics.record_hit(len(found))
            self.metrics.record_miss(len(missing))
        return found, missing

    def set_plans(self, plans: Iterable[Plan]) -> None:
        if not self.enabled:
            return
        count = 0
        with self._lock:
            for plan in plans:
                self._plans[plan.id] = plan.model_copy(deep=True)
                count += 1
            self.metrics.record_set(count)

    def invalidate_plan(self, plan_id: str) -> None:
        with self._lock:
            self._plans.pop(plan_id, None)
            self.metrics.record_invalidation()
        logger.debug("Plan cache entry invalidated", plan_id=plan_id)

    # Product feature sets

    def get_product_features(self, product_id: str) -> list[Feature] | None:
        with self._lock:
            features = self._product_features.get(product_id) if self.enabled else None
            if features is None:
                self.metrics.record_miss()
                return None
            self.metrics.record_hit()
            return [feature.model_copy(deep=True) for feature in features]

    def set_product_features(self, product_id: str, features: Iterable[Feature]) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._product_features[product_id] = [f.model_copy(deep=True) for f in features]
            self.metrics.record_set()

    def invalidate_product(self, product_id: str) -> None:
        with self._lock:
            self._product_features.pop(product_id, None)
            self.metrics.record_invalidation()
        logger.debug("Product feature cache entry invalidated", product_id=product_id)

    def invalidate_features(self) -> None:
        """Drop every cached feature set after a feature definition changed."""
        with self._lock:
            self._product_features.clear()
            self.metrics.record_invalidation()

    def clear(self) -> None:
        with self._lock:
            self._plans.clear()
            self._product_features.clear()
        logger.debug("Feature lookup cache cleared")

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            sizes = {"plans": len(self._plans), "product_features": len(self._product_features)}
            stats = self.metrics.get_stats()
        return {**stats, "enabled": self.enabled, "sizes": sizes}
