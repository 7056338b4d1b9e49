"""Customer aggregate."""

from enum import Enum

from pydantic import Field

from subscrio.core.models import SubscrioBaseModel


class CustomerStatus(str, Enum):
    """Customer status."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class Customer(SubscrioBaseModel):
    """A billable customer, optionally mapped to a payment provider customer."""

    key: str
    display_name: str | None = None
    email: str | None = None
    external_billing_id: str | None = Field(
        None, description="Payment provider customer id, maintained by reconciliation"
    )
    status: CustomerStatus = CustomerStatus.ACTIVE

    def link_external_billing_id(self, external_billing_id: str) -> bool:
        """Record the provider customer id. Returns False when already recorded."""
        if self.external_billing_id == external_billing_id:
            return False
        self.external_billing_id = external_billing_id
        self.touch()
        return True

    def clear_external_billing_id(self) -> bool:
        if self.external_billing_id is None:
            return False
        self.external_billing_id = None
        self.touch()
        return True

    def update_contact(self, display_name: str | None = None, email: str | None = None) -> None:
        if display_name is not None:
            self.display_name = display_name
        if email is not None:
            self.email = email
        self.touch()

    def archive(self) -> None:
        self.status = CustomerStatus.ARCHIVED
        self.touch()

    def unarchive(self) -> None:
        self.status = CustomerStatus.ACTIVE
        self.touch()

    def can_delete(self) -> bool:
        return self.status is CustomerStatus.ARCHIVED
