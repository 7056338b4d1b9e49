"""Feature value validation dispatched on the feature value type."""

import math
from collections.abc import Callable
from enum import Enum

from subscrio.exceptions import ValidationError


class FeatureValueType(str, Enum):
    """Feature value types."""

    TOGGLE = "toggle"
    NUMERIC = "numeric"
    TEXT = "text"


def _validate_toggle(value: str) -> None:
    if value.lower() not in {"true", "false"}:
        raise ValidationError(
            'Toggle features must have value "true" or "false"', field="value", value=value
        )


def _validate_numeric(value: str) -> None:
    if value != value.strip() or "_" in value:
        raise ValidationError(
            "Numeric features must have a valid number value", field="value", value=value
        )
    try:
        number = float(value)
    except ValueError:
        raise ValidationError(
            "Numeric features must have a valid number value", field="value", value=value
        ) from None
    if not math.isfinite(number):
        raise ValidationError(
            "Numeric features must have a finite number value", field="value", value=value
        )


def _validate_text(value: str) -> None:
    return None


_VALIDATORS: dict[FeatureValueType, Callable[[str], None]] = {
    FeatureValueType.TOGGLE: _validate_toggle,
    FeatureValueType.NUMERIC: _validate_numeric,
    FeatureValueType.TEXT: _validate_text,
}


def parse_value_type(value_type: FeatureValueType | str) -> FeatureValueType:
    try:
        return FeatureValueType(value_type)
    except ValueError:
        raise ValidationError(
            f"Unknown feature value type: {value_type}", field="value_type", value=value_type
        ) from None


def validate_feature_value(value: str, value_type: FeatureValueType | str) -> str:
    """
    Validate a feature value against its type.

    Returns:
        The value unchanged

    Raises:
        ValidationError: If the value does not parse for the type
    """
    if not isinstance(value, str):
        raise ValidationError("Feature values must be strings", field="value", value=value)
    _VALIDATORS[parse_value_type(value_type)](value)
    return value


def is_truthy_toggle(value: str | None) -> bool:
    """Interpret a resolved toggle value."""
    return (value or "").lower() == "true"
