# Terminal client for the subscription tracker
# It lets a user:
# add and list subscriptions
# see a month's payments and totals
# generate the next payments, set their amounts and mark them paid

from __future__ import annotations

import argparse
import os
from datetime import date

import pandas as pd

from . import store
from .errors import TrackerError
from .generator import generate_payments
from .totals import monthly_totals

PAYMENT_COLUMNS = ["payment_id", "due_date", "subscription_name", "category", "amount_due", "is_paid", "paid_date"]
SUBSCRIPTION_COLUMNS = ["subscription_id", "name", "category", "default_price", "billing_cycle", "start_date"]


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Subscription tracker terminal client.")
    parser.add_argument("--database", help="SQLAlchemy database URL to use.")
    args = parser.parse_args(argv)

    engine = store.create_store_engine(
        args.database or os.environ.get("DATABASE_URL") or "sqlite:///subscriptions.db"
    )
    store.init_schema(engine)

    # User input loop
    while True:
        print("\nChoose an input:")
        print("1. Add subscription")
        print("2. Show subscriptions")
        print("3. Show payments for a month")
        print("4. Generate payments")
        print("5. Mark payment paid/unpaid")
        print("6. Set payment amount")
        print("7. Quit")
        choice = input("> ")

        try:
            if choice == "1":
                payload = {
                    "name": input("Name: "),
                    "category": input("Category: "),
                    "default_price": input("Price (blank if variable): "),
                    "billing_cycle": input("Billing cycle [Monthly/Quarterly/Annually]: "),
                    "start_date": input("Start date (YYYY-MM-DD): "),
                }
                payload["is_variable"] = not payload["default_price"].strip()
                add_subscription(engine, payload)
            elif choice == "2":
                show_subscriptions(engine)
            elif choice == "3":
                month = input("Month (YYYY-MM, blank for current): ").strip() or date.today().strftime("%Y-%m")
                year_str, _, month_str = month.partition("-")
                show_month(engine, year_str, month_str)
            elif choice == "4":
                report = generate_payments(engine)
                print(f"Generated {report.created_count} payment(s).")
            elif choice == "5":
                payment_id = store.parse_id(input("Payment id: "), "payment_id")
                paid = input("Paid? (y/n): ").strip().lower() in ("y", "yes")
                payment = store.set_paid(engine, payment_id, paid)
                print(f"Payment {payment_id} is now {'paid' if payment['is_paid'] else 'unpaid'}")
            elif choice == "6":
                payment_id = store.parse_id(input("Payment id: "), "payment_id")
                payment = store.set_amount(engine, payment_id, input("Amount due: "))
                print(f"Payment {payment_id} amount is now {payment['amount_due']}")
            elif choice == "7":
                print("Goodbye :)")
                break
            else:
                print("Unknown command")
        except TrackerError as e:
            print(f"Error: {e.message}")


def add_subscription(engine, payload):
    sub = store.create_subscription(engine, payload)
    print(f"Added subscription: {sub['name']} ({sub['billing_cycle']}) starting {sub['start_date']}")
    return sub


def subscriptions_frame(subscriptions) -> pd.DataFrame:
    return pd.DataFrame(subscriptions, columns=SUBSCRIPTION_COLUMNS)


def payments_frame(payments) -> pd.DataFrame:
    df = pd.DataFrame(payments, columns=PAYMENT_COLUMNS)
    return df.rename(columns={"subscription_name": "subscription"})


def show_subscriptions(engine):
    subs = store.list_subscriptions(engine)
    if not subs:
        print("No subscriptions yet :(")
        return
    print("\nSubscriptions:")
    print(subscriptions_frame(subs).to_string(index=False))


def show_month(engine, year, month):
    payments = store.list_payments_for_month(engine, year, month)
    if not payments:
        print(f"No payments due in {year}-{month} :(")
        return
    print(f"\nPayments for {year}-{month}:")
    print(payments_frame(payments).to_string(index=False))

    totals = monthly_totals(payments)
    print(f"\nTotal due: {totals.total_due}  Paid: {totals.total_paid}  Remaining: {totals.remaining}")


if __name__ == "__main__":
    main()
