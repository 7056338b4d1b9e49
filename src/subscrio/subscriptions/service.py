"""
Subscription lifecycle management.

Batch entry points (``process_renewals``, ``process_expired_transitions``,
``expire_lapsed``, ``sync_statuses``) are meant to be invoked periodically by
the host application; nothing here schedules itself.
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any
from uuid import NAMESPACE_URL, uuid5

import structlog

from subscrio.catalog.models import BillingCycle, CatalogStatus, Plan
from subscrio.catalog.validators import validate_feature_value
from subscrio.core.billing_cycle import validate_duration
from subscrio.core.models import generate_key, utcnow, validate_key
from subscrio.customers.models import Customer, CustomerStatus
from subscrio.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from subscrio.repositories.base import (
    BillingCycleRepository,
    CustomerRepository,
    FeatureRepository,
    PlanRepository,
    SubscriptionRepository,
)
from subscrio.subscriptions.models import OverrideType, Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)


def transition_key(subscription_key: str, billing_cycle_key: str) -> str:
    """Key of the subscription created when ``subscription_key`` moves to a cycle on expiry."""
    return f"sub_{uuid5(NAMESPACE_URL, f'subscrio:{subscription_key}:{billing_cycle_key}').hex}"


class SubscriptionService:
    """Create subscriptions and drive them through their lifecycle."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        customers: CustomerRepository,
        billing_cycles: BillingCycleRepository,
        plans: PlanRepository,
        features: FeatureRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.subscriptions = subscriptions
        self.customers = customers
        self.billing_cycles = billing_cycles
        self.plans = plans
        self.features = features
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _require_subscription(self, key: str) -> Subscription:
        subscription = await self.subscriptions.find_by_key(key)
        if subscription is None:
            raise NotFoundError(
                f"Subscription with key '{key}' not found", entity="subscription", key=key
            )
        return subscription

    async def _require_customer(self, key: str) -> Customer:
        customer = await self.customers.find_by_key(key)
        if customer is None:
            raise NotFoundError(f"Customer with key '{key}' not found", entity="customer", key=key)
        return customer

    async def _require_billing_cycle(self, key: str) -> BillingCycle:
        cycle = await self.billing_cycles.find_by_key(key)
        if cycle is None:
            raise NotFoundError(
                f"Billing cycle with key '{key}' not found", entity="billing_cycle", key=key
            )
        return cycle

    async def _require_cycle_of(self, subscription: Subscription) -> BillingCycle:
        cycle = await self.billing_cycles.find_by_id(subscription.billing_cycle_id)
        if cycle is None:
            raise NotFoundError(
                f"Billing cycle for subscription '{subscription.key}' not found",
                entity="billing_cycle",
                key=subscription.billing_cycle_id,
            )
        return cycle

    async def _require_plan_of(self, cycle: BillingCycle) -> Plan:
        plan = await self.plans.find_by_id(cycle.plan_id)
        if plan is None:
            raise NotFoundError(
                f"Plan for billing cycle '{cycle.key}' not found", entity="plan", key=cycle.plan_id
            )
        return plan

    async def get_subscription(self, key: str) -> Subscription | None:
        return await self.subscriptions.find_by_key(key)

    async def list_subscriptions(
        self,
        customer_key: str | None = None,
        statuses: Iterable[SubscriptionStatus] | None = None,
    ) -> list[Subscription]:
        if customer_key is None:
            rows = await self.subscriptions.find_all()
            wanted = set(statuses) if statuses is not None else None
            return [s for s in rows if wanted is None or s.status in wanted]
        customer = await self._require_customer(customer_key)
        return await self.subscriptions.find_by_customer(customer.id, statuses)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        customer_key: str,
        billing_cycle_key: str,
        key: str | None = None,
        *,
        auto_renew: bool = True,
        trial_end_date: datetime | None = None,
        activation_date: datetime | None = None,
        external_billing_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """
        Subscribe a customer to a billing cycle.

        The subscription starts ``pending`` when activation lies in the future,
        ``trial`` when the trial end lies in the future and ``active``
        otherwise. Its first period runs from activation to the cycle's next
        period end (open-ended for ``forever`` cycles).

        Raises:
            NotFoundError: Customer, billing cycle or plan does not exist
            ConflictError: Key or external billing id already in use
            ValidationError: Billing cycle duration is inconsistent
            DomainError: Customer, billing cycle or plan is archived
        """
        now = self.clock()
        customer = await self._require_customer(customer_key)
        if customer.status is CustomerStatus.ARCHIVED:
            raise DomainError(
                f"Cannot subscribe archived customer '{customer_key}'",
                context={"customer_key": customer_key},
            )

        cycle = await self._require_billing_cycle(billing_cycle_key)
        validate_duration(cycle.duration_unit, cycle.duration_value)
        plan = await self._require_plan_of(cycle)
        if cycle.status is CatalogStatus.ARCHIVED or plan.status is CatalogStatus.ARCHIVED:
            raise DomainError(
                f"Cannot subscribe to archived billing cycle '{billing_cycle_key}'",
                context={"billing_cycle_key": billing_cycle_key, "plan_key": plan.key},
            )

        key = validate_key(key) if key is not None else generate_key("sub")
        if await self.subscriptions.exists(key):
            raise ConflictError(
                f"Subscription with key '{key}' already exists", entity="subscription", key=key
            )
        if external_billing_id is not None:
            if await self.subscriptions.find_by_external_billing_id(external_billing_id):
                raise ConflictError(
                    f"Subscription with external billing id '{external_billing_id}' already exists",
                    entity="subscription",
                    key=external_billing_id,
                )

        activation = activation_date or now
        if trial_end_date is not None and trial_end_date <= activation:
            raise ValidationError(
                "Trial end date must be after the activation date",
                field="trial_end_date",
                value=trial_end_date.isoformat(),
            )

        subscription = Subscription.start(
            key=key,
            customer_id=customer.id,
            billing_cycle=cycle,
            now=now,
            auto_renew=auto_renew,
            activation_date=activation,
            trial_end_date=trial_end_date,
            external_billing_id=external_billing_id,
            metadata=metadata,
        )
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription created",
            subscription_key=key,
            customer_key=customer_key,
            billing_cycle_key=billing_cycle_key,
            status=subscription.status.value,
        )
        return subscription

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    async def renew(self, subscription_key: str) -> Subscription:
        """
        Start a new billing period now.

        Raises:
            SubscriptionStateError: Subscription is not active or in trial,
                in particular when it is cancelled or expired
        """
        subscription = await self._require_subscription(subscription_key)
        return await self._renew(subscription, self.clock())

    async def _renew(self, subscription: Subscription, now: datetime) -> Subscription:
        cycle = await self._require_cycle_of(subscription)
        subscription.apply_renewal(now, cycle.calculate_next_period_end(now))
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription renewed",
            subscription_key=subscription.key,
            period_end=subscription.current_period_end.isoformat()
            if subscription.current_period_end
            else None,
        )
        return subscription

    async def cancel(self, subscription_key: str, *, at_period_end: bool = False) -> Subscription:
        """
        Cancel a subscription immediately or at the end of its current period.

        Scheduled cancellation of an open-ended (``forever``) period is
        immediate.
        """
        subscription = await self._require_subscription(subscription_key)
        now = self.clock()
        effective_at = subscription.current_period_end if at_period_end else None
        subscription.cancel(now, effective_at)
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription cancelled",
            subscription_key=subscription_key,
            status=subscription.status.value,
            cancellation_date=subscription.cancellation_date.isoformat(),
        )
        return subscription

    async def _apply(self, subscription_key: str, command: str) -> Subscription:
        subscription = await self._require_subscription(subscription_key)
        getattr(subscription, command)(self.clock())
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription status changed",
            subscription_key=subscription_key,
            action=command,
            status=subscription.status.value,
        )
        return subscription

    async def activate(self, subscription_key: str) -> Subscription:
        return await self._apply(subscription_key, "activate")

    async def end_trial(self, subscription_key: str) -> Subscription:
        return await self._apply(subscription_key, "end_trial")

    async def suspend(self, subscription_key: str) -> Subscription:
        return await self._apply(subscription_key, "suspend")

    async def resume(self, subscription_key: str) -> Subscription:
        return await self._apply(subscription_key, "resume")

    async def set_auto_renew(self, subscription_key: str, auto_renew: bool) -> Subscription:
        subscription = await self._require_subscription(subscription_key)
        subscription.set_auto_renew(auto_renew, self.clock())
        await self.subscriptions.save(subscription)
        return subscription

    # ------------------------------------------------------------------
    # Feature overrides
    # ------------------------------------------------------------------

    async def add_feature_override(
        self,
        subscription_key: str,
        feature_key: str,
        value: str,
        override_type: OverrideType | str = OverrideType.PERMANENT,
        expires_at: datetime | None = None,
    ) -> Subscription:
        subscription = await self._require_subscription(subscription_key)
        feature = await self.features.find_by_key(feature_key)
        if feature is None:
            raise NotFoundError(
                f"Feature with key '{feature_key}' not found", entity="feature", key=feature_key
            )
        validate_feature_value(value, feature.value_type)
        try:
            override_type = OverrideType(override_type)
        except ValueError:
            raise ValidationError(
                f"Unknown override type: {override_type}", field="override_type", value=override_type
            ) from None

        subscription.add_feature_override(
            feature.id, value, override_type, expires_at, at=self.clock()
        )
        await self.subscriptions.save(subscription)
        logger.info(
            "Feature override added",
            subscription_key=subscription_key,
            feature_key=feature_key,
            override_type=override_type.value,
        )
        return subscription

    async def remove_feature_override(self, subscription_key: str, feature_key: str) -> Subscription:
        subscription = await self._require_subscription(subscription_key)
        feature = await self.features.find_by_key(feature_key)
        if feature is None:
            raise NotFoundError(
                f"Feature with key '{feature_key}' not found", entity="feature", key=feature_key
            )
        if subscription.remove_feature_override(feature.id, self.clock()):
            await self.subscriptions.save(subscription)
            logger.info(
                "Feature override removed", subscription_key=subscription_key, feature_key=feature_key
            )
        return subscription

    async def clear_temporary_overrides(self, subscription_key: str) -> Subscription:
        subscription = await self._require_subscription(subscription_key)
        if subscription.clear_temporary_overrides(self.clock()):
            await self.subscriptions.save(subscription)
        return subscription

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_renewals(self, limit: int = 100) -> int:
        """Renew auto-renewing subscriptions whose period has elapsed."""
        now = self.clock()
        renewed = 0
        for subscription in await self.subscriptions.find_due_for_renewal(now, limit):
            try:
                await self._renew(subscription, now)
            except ConcurrencyConflictError:
                logger.warning(
                    "Renewal skipped after concurrent modification",
                    subscription_key=subscription.key,
                )
                continue
            renewed += 1
        logger.info("Renewals processed", renewed=renewed)
        return renewed

    async def process_expired_transitions(self, limit: int = 100) -> int:
        """
        Move lapsed subscriptions onto their plan's expiry billing cycle.

        The replacement subscription copies the customer and ``auto_renew``
        but no feature overrides; the lapsed one becomes ``expired``. The
        replacement key is derived from the old key and the target cycle,
        so a retry after a partial failure does not create a duplicate.

        Returns:
            Number of subscriptions transitioned

        Raises:
            NotFoundError: Target billing cycle or its plan does not exist
        """
        now = self.clock()
        transitioned = 0
        for subscription in await self.subscriptions.find_expired_with_transition_plans(now, limit):
            plan = await self.plans.find_by_id(subscription.plan_id)
            if plan is None or plan.on_expire_transition_to_billing_cycle_key is None:
                logger.error(
                    "Plan not found for subscription transition",
                    subscription_key=subscription.key,
                )
                continue

            target = await self._require_billing_cycle(plan.on_expire_transition_to_billing_cycle_key)
            await self._require_plan_of(target)

            new_key = transition_key(subscription.key, target.key)
            if not await self.subscriptions.exists(new_key):
                replacement = Subscription.start(
                    key=new_key,
                    customer_id=subscription.customer_id,
                    billing_cycle=target,
                    now=now,
                    auto_renew=subscription.auto_renew,
                    transitioned_from_key=subscription.key,
                )
                await self.subscriptions.save(replacement)

            subscription.expire(now)
            await self.subscriptions.save(subscription)
            transitioned += 1
            logger.info(
                "Subscription transitioned",
                subscription_key=subscription.key,
                new_subscription_key=new_key,
                billing_cycle_key=target.key,
            )
        return transitioned

    async def expire_lapsed(self, limit: int = 100) -> int:
        """Expire subscriptions past period end that neither renew nor transition."""
        now = self.clock()
        expired = 0
        for subscription in await self.subscriptions.find_lapsed(now, limit):
            if subscription.expire(now):
                await self.subscriptions.save(subscription)
                expired += 1
                logger.info("Subscription expired", subscription_key=subscription.key)
        return expired

    async def sync_statuses(self, limit: int = 1000) -> int:
        """Apply time-driven status changes: activation, trial end, scheduled cancellation."""
        now = self.clock()
        synced = 0
        for subscription in await self.subscriptions.find_due_for_status_sync(now, limit):
            if not subscription.sync_status(now):
                continue
            try:
                await self.subscriptions.save(subscription)
            except ConcurrencyConflictError:
                logger.warning(
                    "Status sync skipped after concurrent modification",
                    subscription_key=subscription.key,
                )
                continue
            synced += 1
        if synced:
            logger.info("Subscription statuses synced", synced=synced)
        return synced
