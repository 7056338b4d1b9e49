"""
Subscription aggregate.

The subscription owns its status, billing period and feature overrides.
Every state change goes through a command method on the aggregate so that
invalid intermediate states never leave it.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from subscrio.catalog.models import BillingCycle
from subscrio.core.models import SubscrioBaseModel, utcnow
from subscrio.exceptions import SubscriptionStateError


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    PENDING = "pending"
    ACTIVE = "active"
    TRIAL = "trial"
    CANCELLATION_PENDING = "cancellation_pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})

# Statuses that grant feature access
ENTITLED_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.CANCELLATION_PENDING,
    }
)

RENEWABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})


class OverrideType(str, Enum):
    """Lifetime of a subscription feature override."""

    PERMANENT = "permanent"
    TEMPORARY = "temporary"


class FeatureOverride(BaseModel):
    """A subscription-scoped feature value."""

    feature_id: str
    value: str
    override_type: OverrideType = OverrideType.PERMANENT
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_effective(self, at: datetime | None = None) -> bool:
        if self.expires_at is None or at is None:
            return True
        return self.expires_at > at


class Subscription(SubscrioBaseModel):
    """A customer's binding to a billing cycle for a span of time."""

    key: str
    customer_id: str
    billing_cycle_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    activation_date: datetime | None = None
    expiration_date: datetime | None = None
    cancellation_date: datetime | None = None
    trial_end_date: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    auto_renew: bool = True
    external_billing_id: str | None = Field(None, description="Payment provider subscription id")
    external_synced_at: datetime | None = Field(
        None, description="Creation time of the newest provider event applied"
    )
    transitioned_from_key: str | None = None
    feature_overrides: list[FeatureOverride] = Field(default_factory=list)

    @classmethod
    def start(
        cls,
        *,
        key: str,
        customer_id: str,
        billing_cycle: BillingCycle,
        now: datetime,
        auto_renew: bool = True,
        activation_date: datetime | None = None,
        trial_end_date: datetime | None = None,
        external_billing_id: str | None = None,
        transitioned_from_key: str | None = None,
        metadata: dict | None = None,
    ) -> "Subscription":
        """Build a new subscription with its initial status and first period."""
        activation = activation_date or now
        period_end = billing_cycle.calculate_next_period_end(activation)

        if activation > now:
            status = SubscriptionStatus.PENDING
        elif trial_end_date is not None and trial_end_date > now:
            status = SubscriptionStatus.TRIAL
        else:
            status = SubscriptionStatus.ACTIVE

        return cls(
            key=key,
            customer_id=customer_id,
            billing_cycle_id=billing_cycle.id,
            plan_id=billing_cycle.plan_id,
            status=status,
            activation_date=activation,
            trial_end_date=trial_end_date,
            current_period_start=activation,
            current_period_end=period_end,
            auto_renew=auto_renew,
            external_billing_id=external_billing_id,
            transitioned_from_key=transitioned_from_key,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    def has_period_elapsed(self, at: datetime) -> bool:
        """True when a bounded period has reached its end. Forever periods never elapse."""
        return self.current_period_end is not None and self.current_period_end <= at

    def will_renew(self) -> bool:
        return self.auto_renew and self.status in RENEWABLE_STATUSES

    def get_feature_override(
        self, feature_id: str, at: datetime | None = None
    ) -> FeatureOverride | None:
        for override in self.feature_overrides:
            if override.feature_id == feature_id and override.is_effective(at):
                return override
        return None

    def is_status_sync_due(self, at: datetime) -> bool:
        """True when a time-driven status change is due at ``at``."""
        if self.status is SubscriptionStatus.PENDING:
            return self.activation_date is not None and self.activation_date <= at
        if self.status is SubscriptionStatus.TRIAL:
            return self.trial_end_date is not None and self.trial_end_date <= at
        if self.status is SubscriptionStatus.CANCELLATION_PENDING:
            return self.cancellation_date is not None and self.cancellation_date <= at
        return False

    def is_stale_provider_event(self, event_time: datetime) -> bool:
        return self.external_synced_at is not None and event_time < self.external_synced_at

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    def _require_status(self, allowed: frozenset | set, action: str) -> None:
        if self.status not in allowed:
            raise SubscriptionStateError(
                f"Cannot {action} subscription '{self.key}' with status '{self.status.value}'",
                subscription_key=self.key,
                current_state=self.status.value,
                requested_action=action,
            )

    def activate(self, at: datetime) -> None:
        """Move a pending subscription into service."""
        self._require_status({SubscriptionStatus.PENDING}, "activate")
        if self.trial_end_date is not None and self.trial_end_date > at:
            self.status = SubscriptionStatus.TRIAL
        else:
            self.status = SubscriptionStatus.ACTIVE
        if self.activation_date is None or self.activation_date > at:
            self.activation_date = at
        self.touch(at)

    def end_trial(self, at: datetime) -> None:
        self._require_status({SubscriptionStatus.TRIAL}, "end trial of")
        self.status = SubscriptionStatus.ACTIVE
        if self.trial_end_date is None or self.trial_end_date > at:
            self.trial_end_date = at
        self.touch(at)

    def suspend(self, at: datetime) -> None:
        self._require_status({SubscriptionStatus.ACTIVE}, "suspend")
        self.status = SubscriptionStatus.SUSPENDED
        self.touch(at)

    def resume(self, at: datetime) -> None:
        self._require_status({SubscriptionStatus.SUSPENDED}, "resume")
        self.status = SubscriptionStatus.ACTIVE
        self.touch(at)

    def cancel(self, at: datetime, effective_at: datetime | None = None) -> None:
        """Cancel now, or schedule cancellation for ``effective_at``."""
        if self.is_terminal:
            raise SubscriptionStateError(
                f"Subscription '{self.key}' is already {self.status.value}",
                subscription_key=self.key,
                current_state=self.status.value,
                requested_action="cancel",
            )
        self.auto_renew = False
        schedulable = RENEWABLE_STATUSES | {SubscriptionStatus.CANCELLATION_PENDING}
        if effective_at is not None and effective_at > at and self.status in schedulable:
            self.status = SubscriptionStatus.CANCELLATION_PENDING
            self.cancellation_date = effective_at
        else:
            self.status = SubscriptionStatus.CANCELLED
            self.cancellation_date = at
        self.touch(at)

    def set_auto_renew(self, auto_renew: bool, at: datetime | None = None) -> None:
        if auto_renew and self.is_terminal:
            raise SubscriptionStateError(
                f"Cannot enable auto-renew on {self.status.value} subscription '{self.key}'",
                subscription_key=self.key,
                current_state=self.status.value,
                requested_action="enable auto-renew on",
            )
        self.auto_renew = auto_renew
        self.touch(at)

    def expire(self, at: datetime) -> bool:
        """Mark the subscription expired. Returns False when it already was."""
        if self.status is SubscriptionStatus.EXPIRED:
            return False
        self.status = SubscriptionStatus.EXPIRED
        self.expiration_date = at
        self.touch(at)
        return True

    def apply_renewal(self, period_start: datetime, period_end: datetime | None) -> None:
        """Start a new billing period. Temporary overrides do not survive renewal."""
        self._require_status(RENEWABLE_STATUSES, "renew")
        self.clear_temporary_overrides(period_start)
        self.current_period_start = period_start
        self.current_period_end = period_end
        if (
            self.status is SubscriptionStatus.TRIAL
            and self.trial_end_date is not None
            and self.trial_end_date <= period_start
        ):
            self.status = SubscriptionStatus.ACTIVE
        self.touch(period_start)

    def sync_status(self, at: datetime) -> bool:
        """Apply time-driven transitions. Returns True when the status changed."""
        previous = self.status
        if (
            self.status is SubscriptionStatus.PENDING
            and self.activation_date is not None
            and self.activation_date <= at
        ):
            self.activate(at)
        if (
            self.status is SubscriptionStatus.TRIAL
            and self.trial_end_date is not None
            and self.trial_end_date <= at
        ):
            self.status = SubscriptionStatus.ACTIVE
        if (
            self.status is SubscriptionStatus.CANCELLATION_PENDING
            and self.cancellation_date is not None
            and self.cancellation_date <= at
        ):
            self.status = SubscriptionStatus.CANCELLED
        if self.status is not previous:
            self.touch(at)
            return True
        return False

    # ------------------------------------------------------------------
    # Feature overrides
    # ------------------------------------------------------------------

    def add_feature_override(
        self,
        feature_id: str,
        value: str,
        override_type: OverrideType = OverrideType.PERMANENT,
        expires_at: datetime | None = None,
        at: datetime | None = None,
    ) -> None:
        self.feature_overrides = [o for o in self.feature_overrides if o.feature_id != feature_id]
        self.feature_overrides.append(
            FeatureOverride(
                feature_id=feature_id,
                value=value,
                override_type=override_type,
                expires_at=expires_at,
                created_at=at or utcnow(),
            )
        )
        self.touch(at)

    def remove_feature_override(self, feature_id: str, at: datetime | None = None) -> bool:
        remaining = [o for o in self.feature_overrides if o.feature_id != feature_id]
        if len(remaining) == len(self.feature_overrides):
            return False
        self.feature_overrides = remaining
        self.touch(at)
        return True

    def clear_temporary_overrides(self, at: datetime | None = None) -> int:
        """Drop temporary overrides, returning how many were removed."""
        permanent = [
            o for o in self.feature_overrides if o.override_type is OverrideType.PERMANENT
        ]
        removed = len(self.feature_overrides) - len(permanent)
        if removed:
            self.feature_overrides = permanent
            self.touch(at)
        return removed

    # ------------------------------------------------------------------
    # Payment provider synchronisation
    # ------------------------------------------------------------------

    def link_external_billing_id(
        self, external_billing_id: str, at: datetime | None = None
    ) -> bool:
        if self.external_billing_id == external_billing_id:
            return False
        self.external_billing_id = external_billing_id
        self.touch(at)
        return True

    def apply_provider_state(
        self,
        *,
        status: SubscriptionStatus,
        current_period_start: datetime | None,
        current_period_end: datetime | None,
        trial_end_date: datetime | None,
        cancellation_date: datetime | None,
        at: datetime | None = None,
    ) -> bool:
        """Overwrite provider-owned fields. Returns True if anything changed."""
        changes: dict[str, Any] = {"status": status, "cancellation_date": cancellation_date}
        # Dates missing from a provider payload never erase known ones
        if trial_end_date is not None:
            changes["trial_end_date"] = trial_end_date
        if current_period_start is not None:
            changes["current_period_start"] = current_period_start
        if current_period_end is not None:
            changes["current_period_end"] = current_period_end
        if status is SubscriptionStatus.EXPIRED and self.expiration_date is None:
            changes["expiration_date"] = at or utcnow()

        changed = False
        for field, value in changes.items():
            if getattr(self, field) != value:
                setattr(self, field, value)
                changed = True
        if changed:
            self.touch(at)
        return changed

    def apply_provider_period(
        self, period_start: datetime, period_end: datetime | None, at: datetime | None = None
    ) -> bool:
        """Record a paid period. Never moves the period backwards."""
        if self.current_period_start is not None and period_start < self.current_period_start:
            return False
        if self.current_period_start == period_start and self.current_period_end == period_end:
            return False
        self.current_period_start = period_start
        self.current_period_end = period_end
        self.touch(at)
        return True

    def mark_provider_synced(self, event_time: datetime) -> bool:
        if self.external_synced_at is not None and self.external_synced_at >= event_time:
            return False
        self.external_synced_at = event_time
        return True
