"""
Billing period date arithmetic.

``months`` and ``years`` use calendar addition with end-of-month clamping:
the day of month is clamped to the last day of the target month, so
Jan 31 + 1 month is Feb 28 (Feb 29 in a leap year), Mar 31 + 1 month is
Apr 30 and Feb 29 + 1 year is Feb 28. Time of day and tzinfo are kept.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum
from typing import cast

from subscrio.exceptions import ValidationError


class DurationUnit(str, Enum):
    """Billing cycle duration units."""

    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"
    FOREVER = "forever"


def validate_duration(duration_unit: DurationUnit | str, duration_value: int | None) -> DurationUnit:
    """Check a duration and return the normalized unit.

    Raises:
        ValidationError: unknown unit, value present for ``forever``, value
            missing or not a positive integer for any other unit
    """
    try:
        unit = DurationUnit(duration_unit)
    except ValueError:
        raise ValidationError(
            f"Unknown duration unit: {duration_unit}", field="duration_unit", value=duration_unit
        ) from None

    if unit is DurationUnit.FOREVER:
        if duration_value is not None:
            raise ValidationError(
                "Duration value must be absent for forever billing cycles",
                field="duration_value",
                value=duration_value,
            )
        return unit

    if duration_value is None:
        raise ValidationError(
            f"Duration value is required for '{unit.value}' billing cycles",
            field="duration_value",
        )
    # bool is an int subclass
    if isinstance(duration_value, bool) or not isinstance(duration_value, int) or duration_value <= 0:
        raise ValidationError(
            "Duration value must be a positive integer",
            field="duration_value",
            value=duration_value,
        )
    return unit


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def next_period_end(
    start: datetime,
    duration_unit: DurationUnit | str,
    duration_value: int | None = None,
) -> datetime | None:
    """
    Calculate the end of the billing period that begins at ``start``.

    Args:
        start: Period start
        duration_unit: Unit of the billing cycle
        duration_value: Number of units; must be None for ``forever``

    Returns:
        Period end, or None for ``forever`` cycles (the period never ends)
    """
    unit = validate_duration(duration_unit, duration_value)

    if unit is DurationUnit.FOREVER:
        return None
    # validate_duration guarantees a positive count for bounded units
    count = cast(int, duration_value)

    if unit is DurationUnit.DAYS:
        return start + timedelta(days=count)
    if unit is DurationUnit.WEEKS:
        return start + timedelta(weeks=count)
    if unit is DurationUnit.MONTHS:
        return add_months(start, count)
    return add_months(start, 12 * count)
