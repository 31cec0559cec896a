"""Monthly totals over a list of payment rows."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class MonthlyTotals:
    total_due: Decimal
    total_paid: Decimal
    remaining: Decimal


def _amount(payment: dict) -> Decimal:
    value = payment.get("amount_due")
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def monthly_totals(payments: Iterable[dict]) -> MonthlyTotals:
    total_due = ZERO
    total_paid = ZERO
    for p in payments:
        amount = _amount(p)
        total_due += amount
        if p.get("is_paid"):
            total_paid += amount
    return MonthlyTotals(total_due=total_due, total_paid=total_paid, remaining=total_due - total_paid)
