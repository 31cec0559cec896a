"""
Subscription tracker web application.

- JSON API under /api for subscriptions and the monthly payment ledger.
- A server-rendered monthly dashboard at / with totals, a generate button,
  paid/unpaid toggles, per-payment amount edits and a subscription manager.
- `subscription-tracker --generate` runs the payment generator once and exits,
  for cron-style invocation.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
from datetime import date, datetime, timedelta
from decimal import Decimal

from flask import Flask, flash, jsonify, redirect, render_template_string, request, url_for
from werkzeug.exceptions import HTTPException

from . import store
from .due_dates import BillingCycle
from .errors import NotFound, StoreError, TrackerError, ValidationError
from .generator import generate_payments
from .totals import monthly_totals

logger = logging.getLogger(__name__)

DEFAULT_DB_URL = "sqlite:///subscriptions.db"


def _jsonable(record: dict) -> dict:
    out = {}
    for key, value in record.items():
        if isinstance(value, date):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        out[key] = value
    return out


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return payload


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(TrackerError)
    def handle_tracker_error(e: TrackerError):
        if isinstance(e, StoreError):
            logger.error("Store failure on %s %s", request.method, request.path, exc_info=e)
            return jsonify({"error": "Server error, please try again later."}), e.status_code
        body = {"error": e.message}
        if isinstance(e, ValidationError):
            body["field"] = e.field
            logger.info("Rejected %s %s: %s", request.method, request.path, e.message)
        return jsonify(body), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        if not request.path.startswith("/api/"):
            return e
        return jsonify({"error": e.description}), e.code


# -----------------------------
# App factory (allows testing)
# -----------------------------

def create_app(db_url: str | None = None, *, engine_override=None) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-key-change-me")

    DB_URL = db_url or os.environ.get("DATABASE_URL") or DEFAULT_DB_URL

    if engine_override is not None:
        engine = engine_override
    else:
        engine = store.create_store_engine(DB_URL)

    store.init_schema(engine)
    register_error_handlers(app)

    def _month_param_or_current() -> str:
        m = (request.args.get("month") or "").strip()
        try:
            if m:
                parsed = datetime.strptime(m, "%Y-%m")
                # keep prev/next navigation inside the date range
                if 1 < parsed.year < 9999:
                    return m
        except ValueError:
            pass
        return date.today().strftime("%Y-%m")

    def _adjacent_months(ym: str) -> tuple[str, str]:
        y, m = map(int, ym.split("-"))
        prev_m = (date(y, m, 15) - timedelta(days=31)).strftime("%Y-%m")
        next_m = (date(y, m, 15) + timedelta(days=31)).strftime("%Y-%m")
        return prev_m, next_m

    PAGE_TEMPLATE = """
<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\">
  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
  <title>Subscriptions</title>
  <link href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\" rel=\"stylesheet\">
  <style>
    body { padding-top: 2rem; }
    .muted { color: #6c757d; }
  </style>
</head>
<body>
<div class=\"container\">
  <div class=\"d-flex flex-wrap justify-content-between align-items-start mb-3 gap-2\">
    <div>
      <h1 class=\"mb-1\">Monthly Dashboard</h1>
      <div class=\"text-muted\">{{ month_label }}</div>
    </div>
    <form method=\"post\" action=\"{{ url_for('generate') }}\">
      <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
      <button class=\"btn btn-primary\" type=\"submit\">Generate payments</button>
    </form>
  </div>

  <form class=\"d-flex align-items-center gap-2 mb-4\" method=\"get\" action=\"/\">
    <label class=\"form-label m-0\">Month:</label>
    <input type=\"month\" class=\"form-control\" style=\"max-width: 200px\" name=\"month\" value=\"{{ month }}\">
    <button class=\"btn btn-outline-secondary\" type=\"submit\">Go</button>
    <a class=\"btn btn-outline-primary\" href=\"/?month={{ prev_month }}\">&#9664; {{ prev_month }}</a>
    <a class=\"btn btn-outline-primary\" href=\"/?month={{ next_month }}\">{{ next_month }} &#9654;</a>
  </form>

  {% with messages = get_flashed_messages() %}
    {% if messages %}
      <div class=\"alert alert-info\">{{ messages[0] }}</div>
    {% endif %}
  {% endwith %}

  <div class=\"row g-3 mb-4\">
    <div class=\"col-12 col-md-4\"><div class=\"card shadow-sm\"><div class=\"card-body\">
      <div class=\"text-muted small\">Total Due</div>
      <div class=\"fs-4 fw-semibold\">{{ totals.total_due }}</div>
    </div></div></div>
    <div class=\"col-12 col-md-4\"><div class=\"card shadow-sm\"><div class=\"card-body\">
      <div class=\"text-muted small\">Total Paid</div>
      <div class=\"fs-4 fw-semibold text-success\">{{ totals.total_paid }}</div>
    </div></div></div>
    <div class=\"col-12 col-md-4\"><div class=\"card shadow-sm\"><div class=\"card-body\">
      <div class=\"text-muted small\">Remaining</div>
      <div class=\"fs-4 fw-semibold text-danger\">{{ totals.remaining }}</div>
    </div></div></div>
  </div>

  <div class=\"card shadow-sm\">
    <div class=\"card-body\">
      {% if payments %}
      <table class=\"table table-sm align-middle\">
        <thead><tr><th>Due</th><th>Subscription</th><th>Category</th><th class=\"text-end\">Amount</th><th>Status</th><th></th></tr></thead>
        <tbody>
        {% for p in payments %}
          <tr>
            <td>{{ p.due_date }}</td>
            <td>
              {{ p.subscription_name }}
              {% if p.in_trial %}<span class=\"badge text-bg-warning\">Trial ends {{ p.trial_end_date }}</span>{% endif %}
              {% if p.renewal_price is not none %}<span class=\"muted small\">Renews: {{ p.renewal_price }}</span>{% endif %}
            </td>
            <td>{{ p.category or '' }}</td>
            <td class=\"text-end\">
              <form class=\"d-flex justify-content-end gap-1\" method=\"post\" action=\"{{ url_for('payment_amount', payment_id=p.payment_id) }}\">
                <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
                <input class=\"form-control form-control-sm text-end\" style=\"max-width: 110px\" name=\"amount_due\" value=\"{{ p.amount_due }}\">
                <button class=\"btn btn-sm btn-outline-primary\" type=\"submit\">Save</button>
              </form>
            </td>
            <td>{% if p.is_paid %}Paid {{ p.paid_date }}{% else %}Unpaid{% endif %}</td>
            <td>
              <form method=\"post\" action=\"{{ url_for('toggle_paid', payment_id=p.payment_id) }}\">
                <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
                <button class=\"btn btn-sm btn-outline-secondary\" type=\"submit\">{{ 'Mark unpaid' if p.is_paid else 'Mark paid' }}</button>
              </form>
            </td>
          </tr>
        {% endfor %}
        </tbody>
      </table>
      {% else %}
        <div class=\"muted\">No payments due in {{ month_label }}.</div>
      {% endif %}
    </div>
  </div>

  <div class=\"card shadow-sm mt-4\" id=\"subscriptions\">
    <div class=\"card-body\">
      <h2 class=\"h5\">Subscriptions</h2>
      <form class=\"row g-2 align-items-end mb-3\" method=\"post\" action=\"{{ url_for('subs_add') }}\">
        <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
        <div class=\"col-md-2\"><input class=\"form-control\" name=\"name\" placeholder=\"Name\" required></div>
        <div class=\"col-md-2\"><input class=\"form-control\" name=\"category\" placeholder=\"Category\"></div>
        <div class=\"col-md-1\"><input class=\"form-control\" name=\"default_price\" placeholder=\"Price\"></div>
        <div class=\"col-md-2\">
          <select class=\"form-select\" name=\"billing_cycle\">
            {% for c in cycles %}<option>{{ c }}</option>{% endfor %}
          </select>
        </div>
        <div class=\"col-md-2\"><input class=\"form-control\" type=\"date\" name=\"start_date\" required></div>
        <div class=\"col-md-1\"><input class=\"form-control\" name=\"renewal_price\" placeholder=\"Renewal\"></div>
        <div class=\"col-md-1\"><input class=\"form-control\" type=\"date\" name=\"trial_end_date\" title=\"Trial ends\"></div>
        <div class=\"col-md-1 form-check\"><input class=\"form-check-input\" type=\"checkbox\" name=\"is_variable\" id=\"is_variable\"><label class=\"form-check-label\" for=\"is_variable\">Variable</label></div>
        <div class=\"col-12\"><button class=\"btn btn-success\" type=\"submit\">Add subscription</button></div>
      </form>
      {% for s in subscriptions %}
        <div class=\"d-flex flex-wrap gap-2 align-items-center border-top py-2\">
          <form class=\"d-flex flex-wrap gap-1 align-items-center\" method=\"post\" action=\"{{ url_for('subs_update', subscription_id=s.subscription_id) }}\">
            <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
            <input class=\"form-control form-control-sm\" style=\"max-width: 160px\" name=\"name\" value=\"{{ s.name }}\">
            <input class=\"form-control form-control-sm\" style=\"max-width: 130px\" name=\"category\" value=\"{{ s.category or '' }}\">
            <input class=\"form-control form-control-sm\" style=\"max-width: 90px\" name=\"default_price\" value=\"{{ s.default_price if s.default_price is not none else '' }}\">
            <select class=\"form-select form-select-sm\" style=\"max-width: 120px\" name=\"billing_cycle\">
              {% for c in cycles %}<option {{ 'selected' if c == s.billing_cycle else '' }}>{{ c }}</option>{% endfor %}
            </select>
            <input class=\"form-control form-control-sm\" style=\"max-width: 150px\" type=\"date\" name=\"start_date\" value=\"{{ s.start_date }}\">
            <input class=\"form-control form-control-sm\" style=\"max-width: 90px\" name=\"renewal_price\" value=\"{{ s.renewal_price if s.renewal_price is not none else '' }}\">
            <input class=\"form-control form-control-sm\" style=\"max-width: 150px\" type=\"date\" name=\"trial_end_date\" value=\"{{ s.trial_end_date or '' }}\">
            <label class=\"small\"><input type=\"checkbox\" name=\"is_variable\" {{ 'checked' if s.is_variable else '' }}> Variable</label>
            <button class=\"btn btn-sm btn-outline-primary\" type=\"submit\">Update</button>
          </form>
          <form method=\"post\" action=\"{{ url_for('subs_delete', subscription_id=s.subscription_id) }}\"
                onsubmit=\"return confirm('Delete this subscription? All related payments will also be deleted.');\">
            <input type=\"hidden\" name=\"_redirect_month\" value=\"{{ month }}\">
            <button class=\"btn btn-sm btn-outline-danger\" type=\"submit\">Delete</button>
          </form>
        </div>
      {% else %}
        <div class=\"muted\">No subscriptions yet.</div>
      {% endfor %}
    </div>
  </div>
</div>
</body>
</html>
"""

    def _back_to(month: str):
        return redirect(url_for("index", month=month) if month else url_for("index"))

    # ---- Dashboard ----
    @app.get("/")
    def index():
        month = _month_param_or_current()
        prev_month, next_month = _adjacent_months(month)
        y, m = map(int, month.split("-"))
        payments = store.list_payments_for_month(engine, y, m)
        return render_template_string(
            PAGE_TEMPLATE,
            month=month,
            month_label=date(y, m, 1).strftime("%B %Y"),
            prev_month=prev_month,
            next_month=next_month,
            payments=payments,
            totals=monthly_totals(payments),
            subscriptions=store.list_subscriptions(engine),
            cycles=[c.value for c in BillingCycle],
        )

    @app.post("/generate")
    def generate():
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        report = generate_payments(engine)
        flash(f"Generated {report.created_count} payment(s).")
        return _back_to(redirect_month)

    @app.post("/payments/<int:payment_id>/toggle")
    def toggle_paid(payment_id: int):
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        try:
            payment = store.get_payment(engine, payment_id)
            store.set_paid(engine, payment_id, not payment["is_paid"])
        except NotFound:
            flash("Payment not found.")
            return _back_to(redirect_month)
        flash("Payment marked unpaid." if payment["is_paid"] else "Payment marked paid.")
        return _back_to(redirect_month)

    @app.post("/payments/<int:payment_id>/amount")
    def payment_amount(payment_id: int):
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        try:
            store.set_amount(engine, payment_id, request.form.get("amount_due"))
        except NotFound:
            flash("Payment not found.")
            return _back_to(redirect_month)
        except ValidationError as e:
            flash(f"Amount not saved: {e.message}.")
            return _back_to(redirect_month)
        flash("Payment amount updated.")
        return _back_to(redirect_month)

    # ---- Subscription manager ----
    def _subscription_form() -> dict:
        fields = ("name", "category", "default_price", "billing_cycle", "start_date", "renewal_price", "trial_end_date")
        form = {f: (request.form.get(f) or "").strip() for f in fields}
        # unchecked checkboxes are not submitted
        form["is_variable"] = "is_variable" in request.form
        return form

    @app.post("/subs/add")
    def subs_add():
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        try:
            sub = store.create_subscription(engine, _subscription_form())
        except ValidationError as e:
            flash(f"Subscription not saved: {e.message}.")
            return _back_to(redirect_month)
        flash(f"Subscription {sub['name']} added.")
        return _back_to(redirect_month)

    @app.post("/subs/update/<int:subscription_id>")
    def subs_update(subscription_id: int):
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        try:
            store.update_subscription(engine, subscription_id, _subscription_form())
        except ValidationError as e:
            flash(f"Subscription not saved: {e.message}.")
            return _back_to(redirect_month)
        except NotFound:
            flash("Subscription not found.")
            return _back_to(redirect_month)
        flash("Subscription updated.")
        return _back_to(redirect_month)

    @app.post("/subs/delete/<int:subscription_id>")
    def subs_delete(subscription_id: int):
        redirect_month = (request.form.get("_redirect_month") or "").strip()
        try:
            store.delete_subscription(engine, subscription_id)
        except NotFound:
            flash("Subscription not found.")
            return _back_to(redirect_month)
        flash("Subscription deleted.")
        return _back_to(redirect_month)

    # ---- Subscriptions API ----
    @app.post("/api/subscriptions")
    def api_create_subscription():
        sub = store.create_subscription(engine, _json_body())
        return jsonify(_jsonable(sub)), 201

    @app.get("/api/subscriptions")
    def api_list_subscriptions():
        return jsonify([_jsonable(s) for s in store.list_subscriptions(engine)])

    @app.get("/api/subscriptions/<int:subscription_id>")
    def api_get_subscription(subscription_id: int):
        return jsonify(_jsonable(store.get_subscription(engine, subscription_id)))

    @app.put("/api/subscriptions/<int:subscription_id>")
    def api_update_subscription(subscription_id: int):
        sub = store.update_subscription(engine, subscription_id, _json_body())
        return jsonify(_jsonable(sub))

    @app.delete("/api/subscriptions/<int:subscription_id>")
    def api_delete_subscription(subscription_id: int):
        deleted = store.delete_subscription(engine, subscription_id)
        return jsonify({
            "message": "Subscription deleted successfully",
            "deleted_subscription": _jsonable(deleted),
        })

    # ---- Payments API ----
    @app.get("/api/payments/month/<int:year>/<int:month>")
    def api_month_payments(year: int, month: int):
        payments = store.list_payments_for_month(engine, year, month)
        return jsonify([_jsonable(p) for p in payments])

    @app.get("/api/payments/month/<int:year>/<int:month>/summary")
    def api_month_summary(year: int, month: int):
        totals = monthly_totals(store.list_payments_for_month(engine, year, month))
        return jsonify({
            "year": year,
            "month": month,
            "total_due": str(totals.total_due),
            "total_paid": str(totals.total_paid),
            "remaining": str(totals.remaining),
        })

    @app.post("/api/payments")
    def api_create_payment():
        payment = store.create_payment(engine, _json_body())
        return jsonify(_jsonable(payment)), 201

    @app.post("/api/payments/generate")
    def api_generate_payments():
        report = generate_payments(engine)
        return jsonify({"message": "Payment generation complete", "generated": report.created_count})

    @app.put("/api/payments/<int:payment_id>/amount")
    def api_set_amount(payment_id: int):
        payload = _json_body()
        if "amount_due" not in payload:
            raise ValidationError("amount_due", "amount_due is required")
        payment = store.set_amount(engine, payment_id, payload["amount_due"])
        return jsonify(_jsonable(payment))

    @app.put("/api/payments/<int:payment_id>/paid")
    def api_set_paid(payment_id: int):
        payload = _json_body()
        if "is_paid" not in payload:
            raise ValidationError("is_paid", "is_paid status is required")
        payment = store.set_paid(engine, payment_id, payload["is_paid"])
        return jsonify(_jsonable(payment))

    # expose for tests and the CLI
    app.config["_ENGINE"] = engine

    return app


# -----------------------------
# Dev server with safe port binding (debugger & reloader disabled)
# -----------------------------

def _find_free_port() -> int:
    env_port = os.environ.get("PORT")
    if env_port:
        try:
            port = int(env_port)
            if 0 <= port <= 65535:
                return port
        except ValueError:
            pass
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription tracker web application.")
    parser.add_argument(
        "--database",
        help="SQLAlchemy database URL to use (defaults to DATABASE_URL or the bundled sqlite file).",
    )
    parser.add_argument(
        "--host",
        help="Host interface for the development server. Defaults to HOST env var or 127.0.0.1.",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Port for the development server. Defaults to PORT env var or an ephemeral port.",
    )
    parser.add_argument(
        "--generate",
        action="store_true",
        help="Generate the next payment for every subscription and exit.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        app = create_app(db_url=args.database)
    except StoreError:
        logger.exception("Could not initialise the database")
        sys.exit(1)

    if args.generate:
        try:
            report = generate_payments(app.config["_ENGINE"])
        except StoreError:
            logger.exception("Payment generation failed")
            sys.exit(1)
        print(f"Generated {report.created_count} payment(s).")
        if report.failed:
            print(f"Failed subscriptions: {', '.join(str(i) for i in report.failed)}")
        return

    host = args.host or os.environ.get("HOST", "127.0.0.1")
    port = args.port if args.port is not None else _find_free_port()

    try:
        print(f"Starting server on http://{host}:{port}")
        app.run(host=host, port=port, debug=False, use_reloader=False, threaded=False)
    except SystemExit:
        print(
            "\n[!] Server failed to start (SystemExit). This environment may block sockets or the port is unavailable."
        )
        print("    - Try setting a custom port: PORT=5000 subscription-tracker")
        sys.exit(0)


if __name__ == "__main__":
    main()
