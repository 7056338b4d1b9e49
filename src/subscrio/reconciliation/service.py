"""
Payment provider webhook reconciliation.

Applies provider events to customers and subscriptions under at-least-once,
possibly out-of-order delivery. Every handler is an upsert: it resolves the
aggregate by external id, applies the event only where it differs, and saves
once. Replaying an event is a no-op.
"""

from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

import pydantic
import structlog

from subscrio.config import ReconciliationConfig, get_config
from subscrio.core.models import generate_key, utcnow
from subscrio.customers.models import Customer
from subscrio.exceptions import ConcurrencyConflictError, ConfigurationError, SubscrioError
from subscrio.reconciliation.events import (
    CUSTOMER_KEY_FIELDS,
    PROVIDER_STATUS_MAP,
    SUBSCRIPTION_KEY_FIELDS,
    ProviderEvent,
    ProviderEventType,
    epoch_to_datetime,
    first_price_id,
    invoice_period,
    invoice_subscription_id,
    metadata_value,
    object_id,
    subscription_period,
)
from subscrio.reconciliation.ledger import KeyedLock, ProcessedEventLedger
from subscrio.repositories.base import (
    BillingCycleRepository,
    CustomerRepository,
    SubscriptionRepository,
)
from subscrio.subscriptions.models import Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    """Result of processing one provider event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"


class ReconciliationEngine:
    """Apply payment provider events to internal state."""

    def __init__(
        self,
        customers: CustomerRepository,
        subscriptions: SubscriptionRepository,
        billing_cycles: BillingCycleRepository,
        config: ReconciliationConfig | None = None,
        ledger: ProcessedEventLedger | None = None,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.customers = customers
        self.subscriptions = subscriptions
        self.billing_cycles = billing_cycles
        self.config = config or get_config().reconciliation
        if self.config.max_attempts < 1:
            raise ConfigurationError(
                "Reconciliation max_attempts must be at least 1",
                config_key="reconciliation.max_attempts",
            )
        self.ledger = ledger or ProcessedEventLedger(self.config)
        self.locks = locks or KeyedLock()
        self.clock = clock

        self._handlers: dict[str, Callable[[ProviderEvent], Awaitable[ReconciliationOutcome]]] = {
            ProviderEventType.CUSTOMER_CREATED.value: self._handle_customer_upsert,
            ProviderEventType.CUSTOMER_UPDATED.value: self._handle_customer_upsert,
            ProviderEventType.CUSTOMER_DELETED.value: self._handle_customer_deleted,
            ProviderEventType.SUBSCRIPTION_CREATED.value: self._handle_subscription_created,
            ProviderEventType.SUBSCRIPTION_UPDATED.value: self._handle_subscription_updated,
            ProviderEventType.SUBSCRIPTION_DELETED.value: self._handle_subscription_deleted,
            ProviderEventType.INVOICE_PAYMENT_SUCCEEDED.value: self._handle_invoice_paid,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_provider_event(
        self, event: ProviderEvent | Mapping[str, Any]
    ) -> ReconciliationOutcome:
        """
        Apply one provider event.

        Unroutable input (malformed envelope or payload fields, unknown type,
        missing metadata, unknown price, rejected by a business rule) is
        logged and dropped without being recorded as processed.

        Raises:
            ConcurrencyConflictError: The aggregate kept changing underneath
                the handler for ``max_attempts`` attempts; redeliver later
        """
        if not isinstance(event, ProviderEvent):
            try:
                event = ProviderEvent.model_validate(event)
            except pydantic.ValidationError as e:
                logger.warning("Malformed provider event dropped", errors=e.error_count())
                return ReconciliationOutcome.IGNORED

        log = logger.bind(event_id=event.id, event_type=event.type)

        if self.ledger.seen(event.id):
            log.debug("Duplicate provider event skipped")
            return ReconciliationOutcome.DUPLICATE

        handler = self._handlers.get(event.type)
        if handler is None:
            log.info("Unhandled provider event type dropped")
            return ReconciliationOutcome.IGNORED

        lock_key = self._lock_key(event)
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.locks.hold(lock_key):
                    outcome = await handler(event)
                break
            except ConcurrencyConflictError:
                if attempt >= self.config.max_attempts:
                    log.error(
                        "Provider event failed after concurrent modifications", attempts=attempt
                    )
                    raise
                log.warning(
                    "Concurrent modification while applying provider event, retrying",
                    attempt=attempt,
                )
            except SubscrioError as e:
                log.warning("Provider event rejected", error_code=e.error_code, error=e.message)
                return ReconciliationOutcome.IGNORED
            except (TypeError, ValueError, AttributeError, KeyError) as e:
                # Payload fields of an unexpected shape
                log.warning("Malformed provider payload dropped", error=str(e), exc_info=True)
                return ReconciliationOutcome.IGNORED

        if outcome in (ReconciliationOutcome.APPLIED, ReconciliationOutcome.STALE):
            self.ledger.record(event.id)
        log.info("Provider event processed", outcome=outcome.value)
        return outcome

    def _lock_key(self, event: ProviderEvent) -> str:
        payload = event.payload
        if event.type == ProviderEventType.INVOICE_PAYMENT_SUCCEEDED.value:
            return f"subscription:{invoice_subscription_id(payload)}"
        if event.type.startswith("customer.subscription."):
            return f"subscription:{object_id(payload.get('id'))}"
        return f"customer:{object_id(payload.get('id'))}"

    def _ignore(self, event: ProviderEvent, reason: str, **context: Any) -> ReconciliationOutcome:
        logger.warning(
            "Unroutable provider event dropped",
            event_id=event.id,
            event_type=event.type,
            reason=reason,
            **context,
        )
        return ReconciliationOutcome.IGNORED

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def _resolve_customer(
        self, external_id: str | None, payload: Mapping[str, Any]
    ) -> Customer | None:
        """By stored external id first, then by the internal key in metadata."""
        if external_id:
            customer = await self.customers.find_by_external_billing_id(external_id)
            if customer is not None:
                return customer
        key = metadata_value(payload, CUSTOMER_KEY_FIELDS)
        if key is None:
            return None
        return await self.customers.find_by_key(key)

    async def _handle_customer_upsert(self, event: ProviderEvent) -> ReconciliationOutcome:
        payload = event.payload
        external_id = object_id(payload.get("id"))
        if external_id is None:
            return self._ignore(event, "missing customer id")

        customer = await self._resolve_customer(external_id, payload)
        if customer is None:
            return self._ignore(event, "customer not resolvable", external_id=external_id)

        if customer.link_external_billing_id(external_id):
            await self.customers.save(customer)
            logger.info(
                "Customer linked to provider", customer_key=customer.key, external_id=external_id
            )
        return ReconciliationOutcome.APPLIED

    async def _handle_customer_deleted(self, event: ProviderEvent) -> ReconciliationOutcome:
        external_id = object_id(event.payload.get("id"))
        customer = (
            await self.customers.find_by_external_billing_id(external_id) if external_id else None
        )
        if customer is None:
            return self._ignore(event, "customer not linked", external_id=external_id)

        if customer.clear_external_billing_id():
            await self.customers.save(customer)
            logger.info("Customer unlinked from provider", customer_key=customer.key)
        return ReconciliationOutcome.APPLIED

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _provider_state(
        self, event: ProviderEvent, subscription: Subscription | None = None
    ) -> dict[str, Any] | None:
        """Internal subscription fields described by a provider subscription object."""
        payload = event.payload
        raw_status = payload.get("status")
        status = PROVIDER_STATUS_MAP.get(raw_status) if isinstance(raw_status, str) else None
        if status is None:
            return None

        period_start, period_end = subscription_period(payload)
        cancellation_date = None
        if status is SubscriptionStatus.CANCELLED:
            cancellation_date = (
                epoch_to_datetime(payload.get("canceled_at"))
                or epoch_to_datetime(payload.get("ended_at"))
                or (subscription.cancellation_date if subscription is not None else None)
                or event.created
            )
        elif status is SubscriptionStatus.ACTIVE and payload.get("cancel_at_period_end"):
            status = SubscriptionStatus.CANCELLATION_PENDING
            cancellation_date = (
                epoch_to_datetime(payload.get("cancel_at"))
                or period_end
                or (subscription.current_period_end if subscription is not None else None)
            )

        return {
            "status": status,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "trial_end_date": epoch_to_datetime(payload.get("trial_end")),
            "cancellation_date": cancellation_date,
        }

    async def _backfill_customer(self, customer: Customer, external_id: str | None) -> None:
        if external_id and customer.external_billing_id is None:
            customer.link_external_billing_id(external_id)
            await self.customers.save(customer)
            logger.info(
                "Customer linked to provider", customer_key=customer.key, external_id=external_id
            )

    async def _handle_subscription_created(self, event: ProviderEvent) -> ReconciliationOutcome:
        payload = event.payload
        external_id = object_id(payload.get("id"))
        if external_id is None:
            return self._ignore(event, "missing subscription id")

        existing = await self.subscriptions.find_by_external_billing_id(external_id)
        if existing is not None:
            return await self._apply_subscription_state(existing, event)

        provider_customer_id = object_id(payload.get("customer"))
        subscription_key = metadata_value(payload, SUBSCRIPTION_KEY_FIELDS)
        if subscription_key is not None:
            existing = await self.subscriptions.find_by_key(subscription_key)
            if existing is not None:
                # Created internally and pushed to the provider: link only
                if existing.link_external_billing_id(external_id, self.clock()):
                    await self.subscriptions.save(existing)
                    logger.info(
                        "Subscription linked to provider",
                        subscription_key=existing.key,
                        external_id=external_id,
                    )
                customer = await self.customers.find_by_id(existing.customer_id)
                if customer is not None:
                    await self._backfill_customer(customer, provider_customer_id)
                return ReconciliationOutcome.APPLIED

        customer = await self._resolve_customer(provider_customer_id, payload)
        if customer is None:
            return self._ignore(
                event, "customer not resolvable", external_customer_id=provider_customer_id
            )

        price_id = first_price_id(payload)
        if price_id is None:
            return self._ignore(event, "missing price")
        cycle = await self.billing_cycles.find_by_external_price_id(price_id)
        if cycle is None:
            return self._ignore(event, "unknown price", price_id=price_id)

        state = self._provider_state(event)
        if state is None:
            return self._ignore(event, "unknown subscription status", status=payload.get("status"))

        subscription = Subscription.start(
            key=subscription_key or generate_key("sub"),
            customer_id=customer.id,
            billing_cycle=cycle,
            now=self.clock(),
            auto_renew=not payload.get("cancel_at_period_end", False),
            activation_date=epoch_to_datetime(payload.get("start_date")) or event.created,
            trial_end_date=state["trial_end_date"],
            external_billing_id=external_id,
            metadata={"source": "provider"},
        )
        subscription.apply_provider_state(**state, at=event.created)
        subscription.mark_provider_synced(event.created)
        await self._backfill_customer(customer, provider_customer_id)
        await self.subscriptions.save(subscription)
        logger.info(
            "Subscription created from provider",
            subscription_key=subscription.key,
            customer_key=customer.key,
            billing_cycle_key=cycle.key,
            status=subscription.status.value,
        )
        return ReconciliationOutcome.APPLIED

    async def _handle_subscription_updated(self, event: ProviderEvent) -> ReconciliationOutcome:
        external_id = object_id(event.payload.get("id"))
        if external_id is None:
            return self._ignore(event, "missing subscription id")

        subscription = await self.subscriptions.find_by_external_billing_id(external_id)
        if subscription is None:
            return await self._handle_subscription_created(event)
        return await self._apply_subscription_state(subscription, event)

    async def _apply_subscription_state(
        self, subscription: Subscription, event: ProviderEvent
    ) -> ReconciliationOutcome:
        if subscription.is_stale_provider_event(event.created):
            logger.info(
                "Stale provider event skipped",
                event_id=event.id,
                subscription_key=subscription.key,
                synced_at=subscription.external_synced_at.isoformat(),
            )
            return ReconciliationOutcome.STALE

        state = self._provider_state(event, subscription)
        if state is None:
            return self._ignore(
                event, "unknown subscription status", status=event.payload.get("status")
            )

        price_id = first_price_id(event.payload)
        if price_id is not None:
            cycle = await self.billing_cycles.find_by_external_price_id(price_id)
            if cycle is not None and cycle.id != subscription.billing_cycle_id:
                logger.warning(
                    "Provider price change not applied",
                    subscription_key=subscription.key,
                    price_id=price_id,
                )

        changed = subscription.apply_provider_state(**state, at=event.created)
        synced = subscription.mark_provider_synced(event.created)
        if changed or synced:
            await self.subscriptions.save(subscription)
        if changed:
            logger.info(
                "Subscription updated from provider",
                subscription_key=subscription.key,
                status=subscription.status.value,
            )
        return ReconciliationOutcome.APPLIED

    async def _handle_subscription_deleted(self, event: ProviderEvent) -> ReconciliationOutcome:
        external_id = object_id(event.payload.get("id"))
        subscription = (
            await self.subscriptions.find_by_external_billing_id(external_id)
            if external_id
            else None
        )
        if subscription is None:
            return self._ignore(event, "subscription not linked", external_id=external_id)

        # Deletion is terminal and applies even when older events arrived later
        expired = subscription.expire(event.created)
        synced = subscription.mark_provider_synced(event.created)
        if expired or synced:
            await self.subscriptions.save(subscription)
        if expired:
            logger.info("Subscription expired by provider", subscription_key=subscription.key)
        return ReconciliationOutcome.APPLIED

    async def _handle_invoice_paid(self, event: ProviderEvent) -> ReconciliationOutcome:
        external_id = invoice_subscription_id(event.payload)
        if external_id is None:
            return self._ignore(event, "invoice has no subscription")

        subscription = await self.subscriptions.find_by_external_billing_id(external_id)
        if subscription is None:
            return self._ignore(event, "subscription not linked", external_id=external_id)

        period_start, period_end = invoice_period(event.payload)
        if period_start is None or period_end is None:
            return self._ignore(event, "invoice has no billing period")

        if subscription.apply_provider_period(period_start, period_end, self.clock()):
            await self.subscriptions.save(subscription)
            logger.info(
                "Subscription period updated from invoice",
                subscription_key=subscription.key,
                period_end=period_end.isoformat(),
            )
        return ReconciliationOutcome.APPLIED
