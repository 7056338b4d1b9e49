"""Customers."""

from subscrio.customers.models import Customer, CustomerStatus

__all__ = ["Customer", "CustomerStatus"]
