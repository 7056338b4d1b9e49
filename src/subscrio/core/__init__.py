"""Shared domain building blocks."""

from subscrio.core.models import SubscrioBaseModel, generate_key, utcnow, validate_key

__all__ = ["SubscrioBaseModel", "generate_key", "utcnow", "validate_key"]
