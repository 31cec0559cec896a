import unittest
from datetime import date
from unittest import mock

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from subscription_tracker import store, web_app
from subscription_tracker.errors import StoreError
from subscription_tracker.web_app import create_app


class SubscriptionTrackerAppTests(unittest.TestCase):
    def setUp(self):
        engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.app = create_app(engine_override=engine)
        self.client = self.app.test_client()
        self.engine = engine

    def _create_sub(self, **overrides):
        data = {
            "name": "Netflix",
            "category": "Entertainment",
            "default_price": 15.99,
            "is_variable": False,
            "billing_cycle": "Monthly",
            "start_date": "2099-03-12",
        }
        data.update(overrides)
        resp = self.client.post("/api/subscriptions", json=data)
        self.assertEqual(resp.status_code, 201, resp.get_json())
        return resp.get_json()

    def _create_payment(self, sub_id, due="2099-03-12", amount="15.99", **extra):
        data = {"subscription_id": sub_id, "due_date": due, "amount_due": amount}
        data.update(extra)
        return self.client.post("/api/payments", json=data)

    # Subscriptions
    def test_create_subscription(self):
        body = self._create_sub(renewal_price="19.99", trial_end_date="2099-04-01")
        self.assertIn("subscription_id", body)
        self.assertEqual(body["default_price"], "15.99")
        self.assertEqual(body["renewal_price"], "19.99")
        self.assertEqual(body["start_date"], "2099-03-12")
        self.assertEqual(body["trial_end_date"], "2099-04-01")
        self.assertIs(body["is_variable"], False)

    def test_create_subscription_validation(self):
        resp = self.client.post("/api/subscriptions", json={"name": "Gym", "default_price": "abc", "start_date": "2099-01-01"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["field"], "default_price")

        resp = self.client.post("/api/subscriptions", json={"category": "Fitness", "start_date": "2099-01-01"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["field"], "name")

    def test_create_subscription_requires_json_object(self):
        resp = self.client.post("/api/subscriptions", data="not json", content_type="text/plain")
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/subscriptions", json=["a", "list"])
        self.assertEqual(resp.status_code, 400)

    def test_list_subscriptions_sorted(self):
        self._create_sub(name="Zoom")
        self._create_sub(name="Apple Music")
        resp = self.client.get("/api/subscriptions")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([s["name"] for s in resp.get_json()], ["Apple Music", "Zoom"])

    def test_get_subscription(self):
        sub = self._create_sub()
        resp = self.client.get(f"/api/subscriptions/{sub['subscription_id']}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["name"], "Netflix")
        self.assertEqual(self.client.get("/api/subscriptions/999").status_code, 404)

    def test_update_subscription(self):
        sub = self._create_sub()
        resp = self.client.put(
            f"/api/subscriptions/{sub['subscription_id']}",
            json={"name": "Netflix 4K", "default_price": "22.99", "billing_cycle": "Annually", "start_date": "2099-03-12"},
        )
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["name"], "Netflix 4K")
        self.assertEqual(body["billing_cycle"], "Annually")
        self.assertIsNone(body["category"])

    def test_update_missing_subscription_404(self):
        resp = self.client.put("/api/subscriptions/999", json={"name": "X", "start_date": "2099-01-01"})
        self.assertEqual(resp.status_code, 404)
        self.assertIn("error", resp.get_json())

    def test_delete_subscription_cascades(self):
        sub = self._create_sub()
        self._create_payment(sub["subscription_id"])
        resp = self.client.delete(f"/api/subscriptions/{sub['subscription_id']}")
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["message"], "Subscription deleted successfully")
        self.assertEqual(body["deleted_subscription"]["name"], "Netflix")
        self.assertEqual(self.client.get("/api/payments/month/2099/3").get_json(), [])
        with self.engine.connect() as conn:
            count = conn.execute(text(f"SELECT COUNT(*) FROM {store.TABLE_PAY}")).scalar()
        self.assertEqual(count, 0)
        self.assertEqual(self.client.delete(f"/api/subscriptions/{sub['subscription_id']}").status_code, 404)

    # Payments
    def test_create_payment_and_month_listing(self):
        sub = self._create_sub(trial_end_date="2999-01-01", renewal_price="20")
        resp = self._create_payment(sub["subscription_id"])
        self.assertEqual(resp.status_code, 201)
        created = resp.get_json()
        self.assertIs(created["is_paid"], False)
        self.assertIsNone(created["paid_date"])

        rows = self.client.get("/api/payments/month/2099/3").get_json()
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row["subscription_name"], "Netflix")
        self.assertEqual(row["category"], "Entertainment")
        self.assertEqual(row["amount_due"], "15.99")
        self.assertEqual(row["renewal_price"], "20.00")
        self.assertIs(row["in_trial"], True)
        self.assertEqual(self.client.get("/api/payments/month/2099/4").get_json(), [])

    def test_create_payment_errors(self):
        sub = self._create_sub()
        self.assertEqual(self._create_payment(999).status_code, 404)
        self.assertEqual(self._create_payment(sub["subscription_id"], due="12/03/2099").status_code, 400)
        self.assertEqual(self._create_payment(sub["subscription_id"]).status_code, 201)
        self.assertEqual(self._create_payment(sub["subscription_id"]).status_code, 409)

    def test_month_listing_bad_month(self):
        self.assertEqual(self.client.get("/api/payments/month/2099/13").status_code, 400)

    def test_generate_endpoint_is_idempotent(self):
        self._create_sub(name="A")
        self._create_sub(name="B", default_price=None, is_variable=True)
        first = self.client.post("/api/payments/generate")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.get_json(), {"message": "Payment generation complete", "generated": 2})
        second = self.client.post("/api/payments/generate")
        self.assertEqual(second.get_json()["generated"], 0)
        amounts = sorted(r["amount_due"] for r in self.client.get("/api/payments/month/2099/3").get_json())
        self.assertEqual(amounts, ["0.00", "15.99"])

    def test_update_amount(self):
        sub = self._create_sub()
        pid = self._create_payment(sub["subscription_id"]).get_json()["payment_id"]
        resp = self.client.put(f"/api/payments/{pid}/amount", json={"amount_due": "7.5"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["amount_due"], "7.50")

    def test_update_amount_errors(self):
        sub = self._create_sub()
        pid = self._create_payment(sub["subscription_id"]).get_json()["payment_id"]
        missing = self.client.put(f"/api/payments/{pid}/amount", json={})
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.get_json()["error"], "amount_due is required")
        self.assertEqual(self.client.put(f"/api/payments/{pid}/amount", json={"amount_due": -1}).status_code, 400)
        self.assertEqual(self.client.put("/api/payments/999/amount", json={"amount_due": 1}).status_code, 404)

    def test_update_paid_status(self):
        sub = self._create_sub()
        pid = self._create_payment(sub["subscription_id"]).get_json()["payment_id"]
        paid = self.client.put(f"/api/payments/{pid}/paid", json={"is_paid": True}).get_json()
        self.assertIs(paid["is_paid"], True)
        self.assertEqual(paid["paid_date"], date.today().isoformat())
        unpaid = self.client.put(f"/api/payments/{pid}/paid", json={"is_paid": False}).get_json()
        self.assertIs(unpaid["is_paid"], False)
        self.assertIsNone(unpaid["paid_date"])

    def test_update_paid_errors(self):
        sub = self._create_sub()
        pid = self._create_payment(sub["subscription_id"]).get_json()["payment_id"]
        self.assertEqual(self.client.put(f"/api/payments/{pid}/paid", json={}).status_code, 400)
        self.assertEqual(self.client.put("/api/payments/999/paid", json={"is_paid": True}).status_code, 404)

    def test_month_summary(self):
        sub = self._create_sub()
        other = self._create_sub(name="Gym")
        pid = self._create_payment(sub["subscription_id"], amount="15.99").get_json()["payment_id"]
        self._create_payment(other["subscription_id"], due="2099-03-20", amount="0.10")
        self._create_payment(other["subscription_id"], due="2099-03-21", amount="0.20")
        self.client.put(f"/api/payments/{pid}/paid", json={"is_paid": True})
        body = self.client.get("/api/payments/month/2099/3/summary").get_json()
        self.assertEqual(body["total_due"], "16.29")
        self.assertEqual(body["total_paid"], "15.99")
        self.assertEqual(body["remaining"], "0.30")

    def test_store_error_is_generic_500(self):
        with mock.patch.object(store, "list_subscriptions", side_effect=StoreError("boom")):
            with self.assertLogs("subscription_tracker.web_app", level="ERROR"):
                resp = self.client.get("/api/subscriptions")
        self.assertEqual(resp.status_code, 500)
        self.assertNotIn("boom", resp.get_json()["error"])

    def test_unknown_api_route_is_json_404(self):
        resp = self.client.get("/api/nothing-here")
        self.assertEqual(resp.status_code, 404)
        self.assertIn("error", resp.get_json())

    # Dashboard
    def test_dashboard_shows_month_and_totals(self):
        sub = self._create_sub()
        self._create_payment(sub["subscription_id"])
        resp = self.client.get("/?month=2099-03")
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Netflix", resp.data)
        self.assertIn(b"Total Due", resp.data)
        self.assertIn(b"15.99", resp.data)
        self.assertIn(b"March 2099", resp.data)

    def test_dashboard_generate_and_toggle(self):
        self._create_sub()
        resp = self.client.post("/generate", data={"_redirect_month": "2099-03"}, follow_redirects=True)
        self.assertIn(b"Generated 1 payment(s).", resp.data)
        pid = self.client.get("/api/payments/month/2099/3").get_json()[0]["payment_id"]
        resp = self.client.post(f"/payments/{pid}/toggle", data={"_redirect_month": "2099-03"}, follow_redirects=True)
        self.assertIn(b"Payment marked paid.", resp.data)
        self.assertIs(self.client.get("/api/payments/month/2099/3").get_json()[0]["is_paid"], True)
        resp = self.client.post("/payments/999/toggle", data={"_redirect_month": "2099-03"}, follow_redirects=True)
        self.assertIn(b"Payment not found.", resp.data)

    def test_huge_amount_is_400(self):
        sub = self._create_sub()
        pid = self._create_payment(sub["subscription_id"]).get_json()["payment_id"]
        resp = self.client.put(f"/api/payments/{pid}/amount", json={"amount_due": 1e30})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["field"], "amount_due")
        resp = self.client.put(f"/api/payments/{pid}/amount", json={"amount_due": "12345678901234567.89"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.put(f"/api/payments/{pid}/amount", json={"amount_due": "123456789012.34"})
        self.assertEqual(resp.get_json()["amount_due"], "123456789012.34")

    def test_non_ascii_digit_subscription_id_is_400(self):
        resp = self.client.post(
            "/api/payments",
            json={"subscription_id": "²", "due_date": "2099-03-12", "amount_due": "1"},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["field"], "subscription_id")

    def test_dashboard_month_at_date_range_edges(self):
        for month in ("0001-01", "9999-12"):
            with self.subTest(month=month):
                resp = self.client.get(f"/?month={month}")
                self.assertEqual(resp.status_code, 200)
                self.assertIn(date.today().strftime("%B %Y").encode(), resp.data)
        self.assertEqual(self.client.get("/?month=0002-01").status_code, 200)
        self.assertEqual(self.client.get("/?month=9998-12").status_code, 200)

    # Subscription manager & amount forms
    def test_subs_add_form(self):
        resp = self.client.post(
            "/subs/add",
            data={
                "name": "Electric",
                "category": "Utilities",
                "default_price": "",
                "billing_cycle": "Monthly",
                "start_date": "2099-03-05",
                "is_variable": "on",
                "_redirect_month": "2099-03",
            },
            follow_redirects=True,
        )
        self.assertEqual(resp.status_code, 200)
        self.assertIn(b"Subscription Electric added.", resp.data)
        subs = self.client.get("/api/subscriptions").get_json()
        self.assertEqual(len(subs), 1)
        self.assertIs(subs[0]["is_variable"], True)
        self.assertIsNone(subs[0]["default_price"])

    def test_subs_add_form_validation(self):
        resp = self.client.post(
            "/subs/add",
            data={"name": "Gym", "default_price": "abc", "start_date": "2099-03-05", "_redirect_month": "2099-03"},
            follow_redirects=True,
        )
        self.assertIn(b"Subscription not saved: default_price must be a number.", resp.data)
        self.assertEqual(self.client.get("/api/subscriptions").get_json(), [])

    def test_subs_update_form(self):
        sub = self._create_sub(is_variable=True)
        resp = self.client.post(
            f"/subs/update/{sub['subscription_id']}",
            data={
                "name": "Netflix Plus",
                "category": "Fun",
                "default_price": "17.49",
                "billing_cycle": "Quarterly",
                "start_date": "2099-03-12",
                "_redirect_month": "2099-03",
            },
            follow_redirects=True,
        )
        self.assertIn(b"Subscription updated.", resp.data)
        body = self.client.get(f"/api/subscriptions/{sub['subscription_id']}").get_json()
        self.assertEqual(body["name"], "Netflix Plus")
        self.assertEqual(body["default_price"], "17.49")
        self.assertEqual(body["billing_cycle"], "Quarterly")
        # unchecked checkbox clears the flag
        self.assertIs(body["is_variable"], False)
        resp = self.client.post(
            "/subs/update/999",
            data={"name": "X", "start_date": "2099-01-01"},
            follow_redirects=True,
        )
        self.assertIn(b"Subscription not found.", resp.data)

    def test_subs_delete_form_cascades(self):
        sub = self._create_sub()
        self._create_payment(sub["subscription_id"])
        page = self.client.get("/?month=2099-03")
        self.assertIn(b"confirm(", page.data)
        resp = self.client.post(
            f"/subs/delete/{sub['subscription_id']}",
            data={"_redirect_month": "2099-03"},
            follow_redirects=True,
        )
        self.assertIn(b"Subscription deleted.", resp.data)
        self.assertEqual(self.client.get("/api/payments/month/2099/3").get_json(), [])
        resp = self.client.post(f"/subs/delete/{sub['subscription_id']}", data={}, follow_redirects=True)
        self.assertIn(b"Subscription not found.", resp.data)

    def test_dashboard_lists_subscriptions(self):
        self._create_sub(name="Spotify")
        resp = self.client.get("/?month=2099-03")
        self.assertIn(b"Spotify", resp.data)
        self.assertIn(b"Add subscription", resp.data)

    def test_payment_amount_form(self):
        sub = self._create_sub(default_price=None, is_variable=True)
        self.client.post("/api/payments/generate")
        pid = self.client.get("/api/payments/month/2099/3").get_json()[0]["payment_id"]
        resp = self.client.post(
            f"/payments/{pid}/amount",
            data={"amount_due": "63.40", "_redirect_month": "2099-03"},
            follow_redirects=True,
        )
        self.assertIn(b"Payment amount updated.", resp.data)
        self.assertIn(b"63.40", resp.data)
        summary = self.client.get("/api/payments/month/2099/3/summary").get_json()
        self.assertEqual(summary["total_due"], "63.40")

        resp = self.client.post(
            f"/payments/{pid}/amount",
            data={"amount_due": "-5", "_redirect_month": "2099-03"},
            follow_redirects=True,
        )
        self.assertIn(b"Amount not saved: amount_due must not be negative.", resp.data)
        resp = self.client.post("/payments/999/amount", data={"amount_due": "1"}, follow_redirects=True)
        self.assertIn(b"Payment not found.", resp.data)
        self.assertEqual(sub["name"], "Netflix")

    # CLI
    def test_cli_generate(self):
        self._create_sub()
        with mock.patch.object(web_app, "create_app", return_value=self.app), \
                mock.patch("builtins.print") as fake_print:
            web_app.main(["--generate"])
        fake_print.assert_any_call("Generated 1 payment(s).")
        self.assertEqual(len(self.client.get("/api/payments/month/2099/3").get_json()), 1)


if __name__ == "__main__":
    unittest.main()
