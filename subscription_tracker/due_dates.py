"""
Due-date arithmetic for billing cycles.

Month arithmetic clamps the day of month to the last day of the target month,
so 2024-01-31 plus one month is 2024-02-29 and plus three months is 2024-04-30.
Annual advances follow the same rule (Feb 29 -> Feb 28 on non-leap years).
"""

from __future__ import annotations

import calendar
import enum
from datetime import date


class BillingCycle(str, enum.Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.ANNUALLY: 12,
}


def add_months(original: date, months: int) -> date:
    month_index = original.month - 1 + months
    year = original.year + month_index // 12
    month = month_index % 12 + 1
    day = min(original.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(cycle: BillingCycle | str, anchor: date) -> date:
    """Return the due date one billing cycle after ``anchor``.

    ``cycle`` may be a BillingCycle or its string value; an unknown value
    raises ValueError and callers are expected to reject it beforehand.
    """

    return add_months(anchor, CYCLE_MONTHS[BillingCycle(cycle)])
