import os
import tempfile
import unittest
from datetime import date, timedelta
from decimal import Decimal

from fastapi.testclient import TestClient

from ledger_backend.config import Settings
from ledger_backend.main import create_app

RATES = {"EUR": Decimal("1"), "USD": Decimal("1.25"), "GBP": Decimal("0.5")}


class LedgerApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        settings = Settings(
            database_url=f"sqlite:///{os.path.join(self.tmpdir.name, 'ledger.db')}",
            rates=RATES,
            commit_attempts=3,
        )
        self.app = create_app(settings)
        self.client = TestClient(self.app)
        self.client.__enter__()
        response = self.client.post("/users", json={"base_currency": "eur"})
        self.assertEqual(response.status_code, 200)
        self.user_id = response.json()["id"]
        self.headers = {"x-user-id": str(self.user_id)}

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.app.state.ledger.engine.dispose()
        self.tmpdir.cleanup()

    def start_session(self, **payload):
        response = self.client.post("/session/start", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def transaction(self, **overrides):
        payload = {
            "amount": "100",
            "type": "income",
            "category": "salary",
            "date": "2024-03-01",
            "currency": "EUR",
            "description": "March pay",
        }
        payload.update(overrides)
        return payload

    def balance(self):
        response = self.client.get("/balance", headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return Decimal(response.json()["current_balance"])

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_identity_is_required(self) -> None:
        self.assertEqual(self.client.get("/balance").status_code, 401)
        self.assertEqual(self.client.get("/balance", headers={"x-user-id": "abc"}).status_code, 400)
        self.assertEqual(self.client.get("/balance", headers={"x-user-id": "999"}).status_code, 404)

    def test_session_must_be_started(self) -> None:
        self.assertEqual(self.client.get("/balance", headers=self.headers).status_code, 409)

    def test_session_start_initialises_balance(self) -> None:
        session = self.start_session()

        self.assertTrue(session["loaded"])
        self.assertEqual(session["base_currency"], "EUR")
        self.assertEqual(Decimal(session["balance"]["current_balance"]), Decimal("0"))

    def test_save_and_delete_transaction(self) -> None:
        self.start_session()

        response = self.client.post(
            "/transactions",
            json=self.transaction(amount="11", type="expense", category="Food", currency="USD"),
            headers=self.headers,
        )
        body = response.json()

        self.assertEqual(response.status_code, 200, response.text)
        self.assertTrue(body["saved"])
        self.assertEqual(Decimal(body["transaction"]["base_amount"]), Decimal("8.80"))
        self.assertEqual(Decimal(body["balance"]["current_balance"]), Decimal("-8.80"))
        self.assertEqual(Decimal(body["balance"]["balance_ledger"]["USD"]), Decimal("-11.00"))

        transaction_id = body["transaction"]["id"]
        response = self.client.delete(f"/transactions/{transaction_id}", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(response.json()["current_balance"]), Decimal("0"))
        self.assertEqual(self.client.get("/transactions", headers=self.headers).json(), [])

    def test_duplicate_requires_confirmation(self) -> None:
        self.start_session()
        self.client.post("/transactions", json=self.transaction(), headers=self.headers)

        check = self.client.post(
            "/transactions/check-duplicate", json=self.transaction(amount="100.00"), headers=self.headers
        )
        self.assertTrue(check.json()["duplicate"])

        repeated = self.client.post("/transactions", json=self.transaction(), headers=self.headers)
        self.assertEqual(repeated.json()["saved"], False)
        self.assertEqual(repeated.json()["duplicate"], True)
        self.assertEqual(self.balance(), Decimal("100"))

        confirmed = self.client.post(
            "/transactions", json=self.transaction(confirm_duplicate=True), headers=self.headers
        )
        self.assertTrue(confirmed.json()["saved"])
        self.assertEqual(self.balance(), Decimal("200"))

    def test_id_taken_by_another_user_conflicts(self) -> None:
        self.start_session()
        saved = self.client.post(
            "/transactions", json=self.transaction(id="shared-id"), headers=self.headers
        )
        self.assertEqual(saved.status_code, 200, saved.text)

        other_id = self.client.post("/users", json={"base_currency": "EUR"}).json()["id"]
        other_headers = {"x-user-id": str(other_id)}
        self.client.post("/session/start", json={}, headers=other_headers)
        response = self.client.post(
            "/transactions", json=self.transaction(id="shared-id"), headers=other_headers
        )

        self.assertEqual(response.status_code, 409)
        balance = self.client.get("/balance", headers=other_headers).json()
        self.assertEqual(Decimal(balance["current_balance"]), Decimal("0"))

    def test_future_transaction_waits_for_its_date(self) -> None:
        self.start_session()
        upcoming = (date.today() + timedelta(days=30)).isoformat()

        response = self.client.post(
            "/transactions",
            json=self.transaction(type="expense", category="Rent", date=upcoming),
            headers=self.headers,
        )

        self.assertFalse(response.json()["transaction"]["has_transaction_completed"])
        self.assertEqual(self.balance(), Decimal("0"))
        future = self.client.get("/future-transactions", headers=self.headers).json()
        self.assertEqual([item["date"] for item in future], [upcoming])

        reconciled = self.client.post("/future-transactions/process", headers=self.headers)
        self.assertEqual(reconciled.json()["reconciled_ids"], [])

    def test_invalid_transactions_are_rejected(self) -> None:
        self.start_session()

        unknown = self.client.post(
            "/transactions", json=self.transaction(currency="XYZ"), headers=self.headers
        )
        self.assertEqual(unknown.status_code, 400)
        self.assertIn("XYZ", unknown.json()["detail"])

        bad_category = self.client.post(
            "/transactions", json=self.transaction(category="Nope"), headers=self.headers
        )
        self.assertEqual(bad_category.status_code, 400)

        negative = self.client.post(
            "/transactions", json=self.transaction(amount="-5"), headers=self.headers
        )
        self.assertEqual(negative.status_code, 400)

        missing = self.client.delete("/transactions/missing", headers=self.headers)
        self.assertEqual(missing.status_code, 404)

    def test_expecting_transactions(self) -> None:
        self.start_session()
        payload = {
            "amount": "1000",
            "type": "income",
            "category": "Salary",
            "pay_day": 30,
            "start_date": "2099-01-01",
            "currency": "EUR",
            "description": "Pay",
        }

        too_high = self.client.post("/expecting-transactions", json=payload, headers=self.headers)
        self.assertEqual(too_high.status_code, 200)
        self.assertTrue(too_high.json()["pay_day_too_high"])
        self.assertFalse(too_high.json()["saved"])

        payload["pay_day"] = 5
        saved = self.client.post("/expecting-transactions", json=payload, headers=self.headers)
        self.assertTrue(saved.json()["saved"])
        duplicate = self.client.post("/expecting-transactions", json=payload, headers=self.headers)
        self.assertTrue(duplicate.json()["duplicate"])

        listed = self.client.get("/expecting-transactions", headers=self.headers).json()
        self.assertEqual(len(listed), 1)

        processed = self.client.post("/expecting-transactions/process", headers=self.headers)
        self.assertEqual(processed.json()["materialized"], [])

        expecting_id = listed[0]["id"]
        deleted = self.client.delete(f"/expecting-transactions/{expecting_id}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get("/expecting-transactions", headers=self.headers).json(), [])
        self.assertEqual(
            self.client.delete(f"/expecting-transactions/{expecting_id}", headers=self.headers).status_code,
            404,
        )

    def test_settings_lock_base_currency(self) -> None:
        self.start_session()
        updated = self.client.put(
            "/users/me/settings", json={"selected_currency": "usd"}, headers=self.headers
        )
        self.assertEqual(updated.json()["selected_currency"], "USD")

        self.client.post("/transactions", json=self.transaction(), headers=self.headers)
        blocked = self.client.put(
            "/users/me/settings", json={"base_currency": "GBP"}, headers=self.headers
        )
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(
            self.client.get("/users/me/settings", headers=self.headers).json()["base_currency"],
            "EUR",
        )

    def test_first_login_saves_unlogged_transactions(self) -> None:
        session = self.start_session(
            first_login=True,
            unlogged_transactions=[self.transaction(), self.transaction(amount="20", type="expense", category="Food")],
        )

        self.assertEqual(session["transaction_count"], 2)
        self.assertEqual(Decimal(session["balance"]["current_balance"]), Decimal("80"))

    def test_repeated_first_login_start_keeps_balance(self) -> None:
        unlogged = [self.transaction(id="draft-1")]
        self.start_session(first_login=True, unlogged_transactions=unlogged)

        again = self.start_session(first_login=True)
        retried = self.start_session(first_login=True, unlogged_transactions=unlogged)

        self.assertTrue(again["loaded"])
        self.assertEqual(retried["transaction_count"], 1)
        self.assertEqual(Decimal(retried["balance"]["current_balance"]), Decimal("100"))

    def test_summary(self) -> None:
        self.start_session()
        self.client.post("/transactions", json=self.transaction(), headers=self.headers)
        self.client.post(
            "/transactions",
            json=self.transaction(amount="25", type="expense", category="Food", currency="USD"),
            headers=self.headers,
        )

        response = self.client.get(
            "/summary", params={"year": 2024, "month": 3, "currency": "EUR"}, headers=self.headers
        )
        body = response.json()

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(Decimal(body["total_income"]), Decimal("100"))
        self.assertEqual(Decimal(body["total_expenses"]), Decimal("20"))
        self.assertEqual(Decimal(body["current_balance"]), Decimal("80"))
        self.assertTrue(body["has_multiple_currencies"])
        self.assertEqual(body["categories"][0]["category"], "Food")
        self.assertEqual(body["years"], ["2024"])

        self.assertEqual(
            self.client.get("/summary", params={"month": 13}, headers=self.headers).status_code, 400
        )

    def test_currency_endpoints(self) -> None:
        rates = self.client.get("/currency/rates", params={"base": "USD"}).json()
        self.assertEqual(rates["base_currency"], "USD")
        self.assertEqual(Decimal(rates["rates"]["EUR"]), Decimal("0.8"))

        converted = self.client.post(
            "/currency/convert", json={"amount": "10", "from_currency": "eur", "to_currency": "USD"}
        )
        self.assertEqual(Decimal(converted.json()["amount"]), Decimal("12.50"))

        unknown = self.client.post(
            "/currency/convert", json={"amount": "10", "from_currency": "EUR", "to_currency": "CZK"}
        )
        self.assertEqual(unknown.status_code, 400)

    def test_end_session_drops_state(self) -> None:
        self.start_session()

        self.assertEqual(self.client.post("/session/end", headers=self.headers).status_code, 200)
        self.assertEqual(self.client.get("/balance", headers=self.headers).status_code, 409)


if __name__ == "__main__":
    unittest.main()
