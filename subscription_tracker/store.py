"""
Subscription store and payment ledger on top of SQLAlchemy Core.

Every function takes the engine (or an open connection) explicitly so callers
can hand in an in-memory database. Rows come back as plain dicts with dates
as ``datetime.date`` and money as ``Decimal`` quantized to cents.
"""

from __future__ import annotations

import calendar
from contextlib import contextmanager
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .due_dates import BillingCycle
from .errors import ConflictError, NotFound, StoreError, ValidationError

TABLE_SUB = "subscriptions"
TABLE_PAY = "monthly_payments"

CENT = Decimal("0.01")
# largest amount accepted for any money field
MAX_AMOUNT = Decimal("999999999999.99")

_TRUE_STRINGS = ("true", "1", "yes", "on")
_FALSE_STRINGS = ("false", "0", "no", "off")


# -----------------------------
# Engine & schema
# -----------------------------

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_store_engine(db_url: str):
    if db_url.startswith("sqlite"):
        return create_engine(db_url, connect_args={"check_same_thread": False})
    return create_engine(db_url)


def init_schema(engine) -> None:
    """Create both tables if needed and switch on SQLite cascades."""

    if engine.dialect.name == "sqlite" and not event.contains(engine, "connect", _enable_sqlite_foreign_keys):
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        # the listener only sees new connections; cover one the pool already holds
        with connection(engine) as conn:
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

    cycles = ", ".join(f"'{c.value}'" for c in BillingCycle)
    with transaction(engine) as conn:
        conn.execute(text(f"""
            CREATE TABLE IF NOT EXISTS {TABLE_SUB} (
                subscription_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                category TEXT,
                default_price TEXT,
                is_variable INTEGER NOT NULL DEFAULT 0,
                billing_cycle TEXT NOT NULL DEFAULT 'Monthly' CHECK (billing_cycle IN ({cycles})),
                start_date TEXT NOT NULL,
                renewal_price TEXT,
                trial_end_date TEXT
            )
        """))
        conn.execute(text(f"""
            CREATE TABLE IF NOT EXISTS {TABLE_PAY} (
                payment_id INTEGER PRIMARY KEY AUTOINCREMENT,
                subscription_id INTEGER NOT NULL
                    REFERENCES {TABLE_SUB} (subscription_id) ON DELETE CASCADE,
                due_date TEXT NOT NULL,
                amount_due TEXT NOT NULL DEFAULT '0.00',
                is_paid INTEGER NOT NULL DEFAULT 0,
                paid_date TEXT,
                UNIQUE (subscription_id, due_date)
            )
        """))
        conn.execute(text(f"CREATE INDEX IF NOT EXISTS ix_{TABLE_PAY}_due_date ON {TABLE_PAY} (due_date)"))


@contextmanager
def _translate_errors():
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError("A conflicting record already exists.") from exc
    except SQLAlchemyError as exc:
        raise StoreError("Database operation failed.") from exc


@contextmanager
def transaction(engine):
    """engine.begin() with integrity errors as ConflictError and the rest as StoreError."""

    with _translate_errors(), engine.begin() as conn:
        yield conn


@contextmanager
def connection(engine):
    with _translate_errors(), engine.connect() as conn:
        yield conn


# -----------------------------
# Field parsing
# -----------------------------

def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_date(value, field: str, *, required: bool = False) -> date | None:
    if _blank(value):
        if required:
            raise ValidationError(field, f"{field} is required")
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(field, f"{field} must be a date in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(field, f"{field} must be a date in YYYY-MM-DD format") from None


def parse_money(value, field: str, *, required: bool = False) -> Decimal | None:
    """Parse a non-negative amount, accepting numbers or numeric strings."""

    if _blank(value):
        if required:
            raise ValidationError(field, f"{field} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError(field, f"{field} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(field, f"{field} must be a number") from None
    if not amount.is_finite():
        raise ValidationError(field, f"{field} must be a number")
    if amount < 0:
        raise ValidationError(field, f"{field} must not be negative")
    if amount > MAX_AMOUNT:
        raise ValidationError(field, f"{field} must not exceed {MAX_AMOUNT}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_bool(value, field: str, *, default: bool | None = None) -> bool:
    if value is None:
        if default is None:
            raise ValidationError(field, f"{field} is required")
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValidationError(field, f"{field} must be true or false")


def parse_cycle(value) -> BillingCycle:
    if _blank(value):
        return BillingCycle.MONTHLY
    try:
        return BillingCycle(str(value).strip())
    except ValueError:
        allowed = ", ".join(c.value for c in BillingCycle)
        raise ValidationError("billing_cycle", f"billing_cycle must be one of: {allowed}") from None


def parse_id(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(field, f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    if _blank(value):
        raise ValidationError(field, f"{field} is required")
    raise ValidationError(field, f"{field} must be an integer")


def _require_object(payload) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return payload


def validate_subscription(payload) -> dict:
    """Return the full, typed field set for a subscription create/update."""

    payload = _require_object(payload)
    name = payload.get("name")
    if name is not None and not isinstance(name, str):
        raise ValidationError("name", "name must be text")
    name = (name or "").strip()
    if not name:
        raise ValidationError("name", "name is required")
    category = payload.get("category")
    if category is not None and not isinstance(category, str):
        raise ValidationError("category", "category must be text")
    return {
        "name": name,
        "category": (category or "").strip() or None,
        "default_price": parse_money(payload.get("default_price"), "default_price"),
        "is_variable": parse_bool(payload.get("is_variable"), "is_variable", default=False),
        "billing_cycle": parse_cycle(payload.get("billing_cycle")),
        "start_date": parse_date(payload.get("start_date"), "start_date", required=True),
        "renewal_price": parse_money(payload.get("renewal_price"), "renewal_price"),
        "trial_end_date": parse_date(payload.get("trial_end_date"), "trial_end_date"),
    }


def _bind(values: dict) -> dict:
    """Convert typed values into what the database driver stores."""

    bound = {}
    for key, value in values.items():
        if isinstance(value, BillingCycle):
            value = value.value
        elif isinstance(value, bool):
            value = int(value)
        elif isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        bound[key] = value
    return bound


# -----------------------------
# Row conversion
# -----------------------------

def _money(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _subscription_from_row(row) -> dict:
    return {
        "subscription_id": row["subscription_id"],
        "name": row["name"],
        "category": row["category"],
        "default_price": _money(row["default_price"]),
        "is_variable": bool(row["is_variable"]),
        "billing_cycle": row["billing_cycle"],
        "start_date": _date(row["start_date"]),
        "renewal_price": _money(row["renewal_price"]),
        "trial_end_date": _date(row["trial_end_date"]),
    }


def _payment_from_row(row) -> dict:
    return {
        "payment_id": row["payment_id"],
        "subscription_id": row["subscription_id"],
        "due_date": _date(row["due_date"]),
        "amount_due": _money(row["amount_due"]),
        "is_paid": bool(row["is_paid"]),
        "paid_date": _date(row["paid_date"]),
    }


_SUB_COLUMNS = (
    "subscription_id, name, category, default_price, is_variable, billing_cycle, "
    "start_date, renewal_price, trial_end_date"
)
_PAY_COLUMNS = "payment_id, subscription_id, due_date, amount_due, is_paid, paid_date"


# -----------------------------
# Subscriptions
# -----------------------------

def _fetch_subscription(conn, subscription_id: int) -> dict:
    row = conn.execute(
        text(f"SELECT {_SUB_COLUMNS} FROM {TABLE_SUB} WHERE subscription_id = :id"),
        {"id": subscription_id},
    ).mappings().first()
    if row is None:
        raise NotFound(f"Subscription {subscription_id} not found")
    return _subscription_from_row(row)


def create_subscription(engine, payload) -> dict:
    values = validate_subscription(payload)
    with transaction(engine) as conn:
        result = conn.execute(text(f"""
            INSERT INTO {TABLE_SUB}
                (name, category, default_price, is_variable, billing_cycle, start_date, renewal_price, trial_end_date)
            VALUES
                (:name, :category, :default_price, :is_variable, :billing_cycle, :start_date, :renewal_price, :trial_end_date)
        """), _bind(values))
        return _fetch_subscription(conn, result.lastrowid)


def get_subscription(engine, subscription_id: int) -> dict:
    with connection(engine) as conn:
        return _fetch_subscription(conn, subscription_id)


def list_subscriptions(engine) -> list[dict]:
    with connection(engine) as conn:
        rows = conn.execute(
            text(f"SELECT {_SUB_COLUMNS} FROM {TABLE_SUB} ORDER BY name ASC, subscription_id ASC")
        ).mappings().all()
    return [_subscription_from_row(r) for r in rows]


def update_subscription(engine, subscription_id: int, payload) -> dict:
    values = validate_subscription(payload)
    with transaction(engine) as conn:
        result = conn.execute(text(f"""
            UPDATE {TABLE_SUB}
            SET name = :name,
                category = :category,
                default_price = :default_price,
                is_variable = :is_variable,
                billing_cycle = :billing_cycle,
                start_date = :start_date,
                renewal_price = :renewal_price,
                trial_end_date = :trial_end_date
            WHERE subscription_id = :id
        """), {**_bind(values), "id": subscription_id})
        if not result.rowcount:
            raise NotFound(f"Subscription {subscription_id} not found")
        return _fetch_subscription(conn, subscription_id)


def delete_subscription(engine, subscription_id: int) -> dict:
    """Delete a subscription; its payments go with it through the cascade."""

    with transaction(engine) as conn:
        deleted = _fetch_subscription(conn, subscription_id)
        conn.execute(text(f"DELETE FROM {TABLE_SUB} WHERE subscription_id = :id"), {"id": subscription_id})
    return deleted


# -----------------------------
# Payment ledger
# -----------------------------

def month_bounds(year: int, month: int) -> tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def _parse_year_month(year, month) -> tuple[int, int]:
    try:
        y, m = int(year), int(month)
    except (TypeError, ValueError):
        raise ValidationError("month", "year and month must be integers") from None
    if not 1 <= m <= 12:
        raise ValidationError("month", "month must be between 1 and 12")
    if not 1 <= y <= 9999:
        raise ValidationError("year", "year must be between 1 and 9999")
    return y, m


def list_payments_for_month(engine, year, month, *, today: date | None = None) -> list[dict]:
    """Payments due in the month joined with their subscription, due_date ascending."""

    y, m = _parse_year_month(year, month)
    start, end = month_bounds(y, m)
    today = today or date.today()
    with connection(engine) as conn:
        rows = conn.execute(text(f"""
            SELECT p.payment_id, p.subscription_id, p.due_date, p.amount_due, p.is_paid, p.paid_date,
                   s.name AS subscription_name, s.category, s.trial_end_date, s.renewal_price
            FROM {TABLE_PAY} p
            JOIN {TABLE_SUB} s ON p.subscription_id = s.subscription_id
            WHERE p.due_date BETWEEN :start AND :end
            ORDER BY p.due_date ASC, p.payment_id ASC
        """), {"start": start.isoformat(), "end": end.isoformat()}).mappings().all()

    payments = []
    for r in rows:
        payment = _payment_from_row(r)
        trial_end = _date(r["trial_end_date"])
        payment.update(
            subscription_name=r["subscription_name"],
            category=r["category"],
            trial_end_date=trial_end,
            renewal_price=_money(r["renewal_price"]),
            in_trial=trial_end is not None and today < trial_end,
        )
        payments.append(payment)
    return payments


def _fetch_payment(conn, payment_id: int) -> dict:
    row = conn.execute(
        text(f"SELECT {_PAY_COLUMNS} FROM {TABLE_PAY} WHERE payment_id = :id"),
        {"id": payment_id},
    ).mappings().first()
    if row is None:
        raise NotFound(f"Payment record {payment_id} not found")
    return _payment_from_row(row)


def latest_payment(conn, subscription_id: int) -> dict | None:
    """The payment with the latest due_date for a subscription, or None."""

    row = conn.execute(
        text(f"SELECT {_PAY_COLUMNS} FROM {TABLE_PAY} WHERE subscription_id = :id ORDER BY due_date DESC LIMIT 1"),
        {"id": subscription_id},
    ).mappings().first()
    return _payment_from_row(row) if row else None


def payment_exists(conn, subscription_id: int, due_date: date) -> bool:
    row = conn.execute(
        text(f"SELECT 1 FROM {TABLE_PAY} WHERE subscription_id = :id AND due_date = :due"),
        {"id": subscription_id, "due": due_date.isoformat()},
    ).first()
    return row is not None


def insert_payment(conn, subscription_id: int, due_date: date, amount_due: Decimal,
                   is_paid: bool = False, paid_date: date | None = None) -> int:
    result = conn.execute(text(f"""
        INSERT INTO {TABLE_PAY} (subscription_id, due_date, amount_due, is_paid, paid_date)
        VALUES (:subscription_id, :due_date, :amount_due, :is_paid, :paid_date)
    """), _bind({
        "subscription_id": subscription_id,
        "due_date": due_date,
        "amount_due": amount_due,
        "is_paid": is_paid,
        "paid_date": paid_date if is_paid else None,
    }))
    return result.lastrowid


def create_payment(engine, payload, *, today: date | None = None) -> dict:
    payload = _require_object(payload)
    subscription_id = parse_id(payload.get("subscription_id"), "subscription_id")
    due_date = parse_date(payload.get("due_date"), "due_date", required=True)
    amount_due = parse_money(payload.get("amount_due"), "amount_due", required=True)
    is_paid = parse_bool(payload.get("is_paid"), "is_paid", default=False)
    paid_date = parse_date(payload.get("paid_date"), "paid_date")
    if is_paid and paid_date is None:
        paid_date = today or date.today()

    with transaction(engine) as conn:
        _fetch_subscription(conn, subscription_id)
        if payment_exists(conn, subscription_id, due_date):
            raise ConflictError(
                f"A payment for subscription {subscription_id} is already due on {due_date.isoformat()}"
            )
        payment_id = insert_payment(conn, subscription_id, due_date, amount_due, is_paid, paid_date)
        return _fetch_payment(conn, payment_id)


def get_payment(engine, payment_id: int) -> dict:
    with connection(engine) as conn:
        return _fetch_payment(conn, payment_id)


def set_amount(engine, payment_id: int, amount_due) -> dict:
    amount = parse_money(amount_due, "amount_due", required=True)
    with transaction(engine) as conn:
        result = conn.execute(
            text(f"UPDATE {TABLE_PAY} SET amount_due = :amount WHERE payment_id = :id"),
            {"amount": str(amount), "id": payment_id},
        )
        if not result.rowcount:
            raise NotFound(f"Payment record {payment_id} not found")
        return _fetch_payment(conn, payment_id)


def set_paid(engine, payment_id: int, is_paid, *, today: date | None = None) -> dict:
    """Mark a payment paid (paid_date = today, even if already paid) or unpaid."""

    paid = parse_bool(is_paid, "is_paid")
    paid_date = (today or date.today()).isoformat() if paid else None
    with transaction(engine) as conn:
        result = conn.execute(
            text(f"UPDATE {TABLE_PAY} SET is_paid = :paid, paid_date = :paid_date WHERE payment_id = :id"),
            {"paid": int(paid), "paid_date": paid_date, "id": payment_id},
        )
        if not result.rowcount:
            raise NotFound(f"Payment record {payment_id} not found")
        return _fetch_payment(conn, payment_id)
