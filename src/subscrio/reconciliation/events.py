"""
Payment provider event envelope and payload accessors.

Events follow the Stripe webhook shape::

    {"id": "evt_...", "type": "customer.subscription.updated",
     "created": 1700000000, "data": {"object": {...}}}

Payloads are already authenticated upstream; this module only parses them.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from subscrio.subscriptions.models import SubscriptionStatus

CUSTOMER_KEY_FIELDS = ("subscrioCustomerKey", "subscrio_customer_key")
SUBSCRIPTION_KEY_FIELDS = ("subscrioSubscriptionKey", "subscrio_subscription_key")


class ProviderEventType(str, Enum):
    """Provider event types the reconciliation engine handles."""

    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class ProviderEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any] = Field(description="Provider object the event describes")


class ProviderEvent(BaseModel):
    """Inbound provider webhook event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, description="Provider event id, used for deduplication")
    type: str
    created: datetime = Field(description="Event creation time (epoch seconds on the wire)")
    data: ProviderEventData

    @field_validator("created")
    @classmethod
    def normalize_created(cls, v: datetime) -> datetime:
        # Provider timestamps are UTC; naive values are read as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def payload(self) -> dict[str, Any]:
        return self.data.object


# Provider subscription status -> internal status
PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIAL,
    "canceled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def epoch_to_datetime(value: Any) -> datetime | None:
    """Convert provider epoch seconds to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def object_id(value: Any) -> str | None:
    """Return the id of an expandable reference, which is either an id or an object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def metadata_value(payload: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    metadata = payload.get("metadata")
    if not isinstance(metadata, Mapping):
        return None
    for field in fields:
        value = metadata.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def _first_item(payload: Mapping[str, Any], collection: str) -> Mapping[str, Any] | None:
    container = payload.get(collection)
    if not isinstance(container, Mapping):
        return None
    items = container.get("data")
    if not isinstance(items, list) or not items or not isinstance(items[0], Mapping):
        return None
    return items[0]


def first_price_id(payload: Mapping[str, Any]) -> str | None:
    """Price id of the subscription's first item."""
    item = _first_item(payload, "items")
    if item is not None:
        price = object_id(item.get("price")) or object_id(item.get("plan"))
        if price:
            return price
    return object_id(payload.get("plan"))


def subscription_period(payload: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Current period bounds from the subscription, or from its first item."""
    start = epoch_to_datetime(payload.get("current_period_start"))
    end = epoch_to_datetime(payload.get("current_period_end"))
    if start is None or end is None:
        item = _first_item(payload, "items") or {}
        start = start or epoch_to_datetime(item.get("current_period_start"))
        end = end or epoch_to_datetime(item.get("current_period_end"))
    return start, end


def invoice_subscription_id(payload: Mapping[str, Any]) -> str | None:
    subscription = object_id(payload.get("subscription"))
    if subscription:
        return subscription
    parent = payload.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return object_id(details.get("subscription"))
    return None


def invoice_period(payload: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Billing period of the invoice's first line item."""
    line = _first_item(payload, "lines")
    if line is None or not isinstance(line.get("period"), Mapping):
        return None, None
    period = line["period"]
    return epoch_to_datetime(period.get("start")), epoch_to_datetime(period.get("end"))
