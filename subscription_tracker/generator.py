"""
Recurring-payment generation.

For each subscription the ledger itself records what has already been
generated: the next due date is derived from the latest existing payment
(or the start date when there is none), and a row is inserted only when no
payment exists yet for that (subscription_id, due_date) pair.

A subscription whose latest payment is still unpaid already has its next
unpaid instance, so it is left alone until that payment is marked paid.
Running the generator twice in a row therefore inserts nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from . import store
from .due_dates import BillingCycle, next_due_date
from .errors import ConflictError, StoreError

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    created_count: int = 0
    failed: list[int] = field(default_factory=list)


def _generate_for(engine, sub: dict) -> bool:
    """Insert the next unpaid payment for one subscription. Returns True if a row was created."""

    sub_id = sub["subscription_id"]
    with store.transaction(engine) as conn:
        latest = store.latest_payment(conn, sub_id)
        if latest is None:
            candidate = sub["start_date"]
        elif not latest["is_paid"]:
            logger.debug("Subscription %s still has an unpaid payment due %s", sub_id, latest["due_date"])
            return False
        else:
            candidate = next_due_date(sub["billing_cycle"], latest["due_date"])
        if store.payment_exists(conn, sub_id, candidate):
            logger.debug("Payment for subscription %s on %s already exists", sub_id, candidate)
            return False
        amount = sub["default_price"] if sub["default_price"] is not None else Decimal("0.00")
        store.insert_payment(conn, sub_id, candidate, amount)
    return True


def generate_payments(engine) -> GenerationReport:
    """Materialize the next payment instance for every subscription."""

    report = GenerationReport()
    for sub in store.list_subscriptions(engine):
        sub_id = sub["subscription_id"]
        try:
            BillingCycle(sub["billing_cycle"])
        except ValueError:
            logger.warning("Skipping subscription %s: unknown billing cycle %r", sub_id, sub["billing_cycle"])
            report.failed.append(sub_id)
            continue
        try:
            created = _generate_for(engine, sub)
        except ConflictError:
            # a concurrent run inserted the same row first
            logger.debug("Payment for subscription %s generated concurrently", sub_id)
            continue
        except StoreError:
            logger.warning("Skipping subscription %s: database error during generation", sub_id, exc_info=True)
            report.failed.append(sub_id)
            continue
        if created:
            report.created_count += 1

    logger.info(
        "Payment generation complete: %d created, %d failed",
        report.created_count,
        len(report.failed),
    )
    return report
