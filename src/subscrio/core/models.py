"""
Base domain model.

Provides the fields every aggregate carries: a surrogate id, timestamps and
an optimistic-concurrency version managed by the repository layer.
"""

import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from subscrio.exceptions import ValidationError


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def generate_key(prefix: str) -> str:
    """Generate an external reference key such as ``sub_3f2a...``."""
    return f"{prefix}_{uuid4().hex}"


_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,255}")


def validate_key(key: str, field: str = "key") -> str:
    """Natural keys are 1-255 alphanumerics, hyphens or underscores."""
    if not isinstance(key, str) or not _KEY_PATTERN.fullmatch(key):
        raise ValidationError(
            "Key must be alphanumeric with hyphens/underscores (max 255 characters)",
            field=field,
            value=key,
        )
    return key


class SubscrioBaseModel(BaseModel):
    """Base model for all aggregates with common fields."""

    model_config = ConfigDict(use_enum_values=False, arbitrary_types_allowed=False)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Surrogate identifier")
    created_at: datetime = Field(default_factory=utcnow, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utcnow, description="Last update timestamp")
    version: int = Field(0, description="Optimistic concurrency version")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    def touch(self, at: datetime | None = None) -> None:
        """Record a modification."""
        self.updated_at = at or utcnow()
