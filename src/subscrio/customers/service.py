"""Customer management service."""

from typing import Any

import structlog

from subscrio.core.models import validate_key
from subscrio.customers.models import Customer
from subscrio.exceptions import ConflictError, DomainError, NotFoundError
from subscrio.repositories.base import CustomerRepository, SubscriptionRepository

logger = structlog.get_logger(__name__)


class CustomerService:
    """Manage customers and their payment provider mapping."""

    def __init__(self, customers: CustomerRepository, subscriptions: SubscriptionRepository) -> None:
        self.customers = customers
        self.subscriptions = subscriptions

    async def _require_customer(self, key: str) -> Customer:
        customer = await self.customers.find_by_key(key)
        if customer is None:
            raise NotFoundError(f"Customer with key '{key}' not found", entity="customer", key=key)
        return customer

    async def _ensure_external_id_unused(self, external_billing_id: str, customer_id: str) -> None:
        existing = await self.customers.find_by_external_billing_id(external_billing_id)
        if existing is not None and existing.id != customer_id:
            raise ConflictError(
                f"Customer with external billing id '{external_billing_id}' already exists",
                entity="customer",
                key=external_billing_id,
            )

    async def create_customer(
        self,
        key: str,
        display_name: str | None = None,
        email: str | None = None,
        external_billing_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        validate_key(key)
        if await self.customers.exists(key):
            raise ConflictError(
                f"Customer with key '{key}' already exists", entity="customer", key=key
            )

        customer = Customer(key=key, display_name=display_name, email=email, metadata=metadata or {})
        if external_billing_id is not None:
            await self._ensure_external_id_unused(external_billing_id, customer.id)
            customer.link_external_billing_id(external_billing_id)

        await self.customers.save(customer)
        logger.info("Customer created", customer_key=key)
        return customer

    async def update_customer(
        self,
        key: str,
        display_name: str | None = None,
        email: str | None = None,
        external_billing_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Customer:
        customer = await self._require_customer(key)
        customer.update_contact(display_name=display_name, email=email)
        if external_billing_id is not None:
            await self._ensure_external_id_unused(external_billing_id, customer.id)
            customer.link_external_billing_id(external_billing_id)
        if metadata is not None:
            customer.metadata = dict(metadata)
        await self.customers.save(customer)
        logger.info("Customer updated", customer_key=key)
        return customer

    async def get_customer(self, key: str) -> Customer | None:
        return await self.customers.find_by_key(key)

    async def list_customers(self, filters: dict[str, Any] | None = None) -> list[Customer]:
        return await self.customers.find_all(filters)

    async def archive_customer(self, key: str) -> Customer:
        customer = await self._require_customer(key)
        customer.archive()
        await self.customers.save(customer)
        logger.info("Customer archived", customer_key=key)
        return customer

    async def unarchive_customer(self, key: str) -> Customer:
        customer = await self._require_customer(key)
        customer.unarchive()
        await self.customers.save(customer)
        return customer

    async def delete_customer(self, key: str) -> None:
        customer = await self._require_customer(key)
        if not customer.can_delete():
            raise DomainError(
                f"Cannot delete active customer '{key}'. Archive it first.",
                context={"customer_key": key},
            )
        if await self.subscriptions.has_subscriptions_for_customer(customer.id):
            raise DomainError(
                f"Cannot delete customer '{key}'. It has subscriptions.",
                context={"customer_key": key},
            )
        await self.customers.delete(customer.id)
        logger.info("Customer deleted", customer_key=key)
