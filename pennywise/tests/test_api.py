import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from pennywise.db import create_db_engine
from pennywise.main import create_app
from pennywise.notifications import LogSender
from pennywise.settings import Settings


class ReceiptStub:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls = 0

    def generate_text(self, prompt: str) -> str:
        return '["Keep it up"]'

    def extract(self, file_bytes: bytes, mime_type: str, prompt: str) -> str:
        self.calls += 1
        return self.text


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        self.sender = LogSender()
        self.app = create_app(
            settings=Settings(database_url="sqlite://", cron_secret="s3cret"),
            engine=self.engine,
            sender=self.sender,
            receipt_client=ReceiptStub(
                '{"amount": 23.5, "date": "2024-03-09", "merchantName": "Cafe", "category": "food"}'
            ),
        )
        self.client_cm = TestClient(self.app)
        self.client = self.client_cm.__enter__()
        response = self.client.post(
            "/users/sync",
            json={"external_id": "user_abc", "email": "Ana@Example.com", "name": "Ana"},
        )
        self.assertEqual(response.status_code, 200)
        self.user = response.json()
        self.headers = {"x-user-id": str(self.user["id"])}

    def tearDown(self) -> None:
        self.client_cm.__exit__(None, None, None)
        self.engine.dispose()

    def _create_account(self, **overrides) -> dict:
        body = {"name": "Checking", "balance": "100.00"}
        body.update(overrides)
        response = self.client.post("/accounts", json=body, headers=self.headers)
        self.assertEqual(response.status_code, 200)
        return response.json()

    def _create_transaction(self, account_id: int, **overrides) -> dict:
        body = {
            "account_id": account_id,
            "type": "EXPENSE",
            "amount": "25.50",
            "date": "2024-03-01T09:00:00",
            "category": "food",
        }
        body.update(overrides)
        response = self.client.post("/transactions", json=body, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _balance(self, account_id: int) -> Decimal:
        response = self.client.get(f"/accounts/{account_id}", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        return Decimal(response.json()["balance"])

    def test_sync_is_idempotent_and_normalizes_email(self) -> None:
        response = self.client.post(
            "/users/sync", json={"external_id": "user_abc", "email": "ana@example.com"}
        )

        self.assertEqual(response.json()["id"], self.user["id"])
        self.assertEqual(self.user["email"], "ana@example.com")

    def test_first_account_becomes_default(self) -> None:
        first = self._create_account()
        second = self._create_account(name="Savings", type="savings")

        self.assertTrue(first["is_default"])
        self.assertFalse(second["is_default"])
        self.assertEqual(second["type"], "SAVINGS")

        response = self.client.put(f"/accounts/{second['id']}/default", headers=self.headers)
        self.assertTrue(response.json()["is_default"])
        listed = {row["id"]: row["is_default"] for row in self.client.get("/accounts", headers=self.headers).json()}
        self.assertEqual(listed, {first["id"]: False, second["id"]: True})

    def test_transactions_move_the_account_balance(self) -> None:
        account = self._create_account()
        expense = self._create_transaction(account["id"])
        income = self._create_transaction(account["id"], type="INCOME", amount="40", category="salary")

        self.assertEqual(self._balance(account["id"]), Decimal("114.50"))

        response = self.client.put(
            f"/transactions/{expense['id']}",
            json={
                "account_id": account["id"],
                "type": "EXPENSE",
                "amount": "10",
                "date": "2024-03-01T09:00:00",
                "category": "food",
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._balance(account["id"]), Decimal("130.00"))

        response = self.client.post(
            "/transactions/bulk-delete",
            json={"transaction_ids": [expense["id"], income["id"]]},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deleted_count"], 2)
        self.assertEqual(Decimal(response.json()["balance_changes"][str(account["id"])]), Decimal("-30"))
        self.assertEqual(self._balance(account["id"]), Decimal("100.00"))

    def test_list_transactions_filters_by_type(self) -> None:
        account = self._create_account()
        self._create_transaction(account["id"])
        self._create_transaction(account["id"], type="INCOME", amount="40", category="salary")

        response = self.client.get("/transactions", params={"type": "income"}, headers=self.headers)

        self.assertEqual(
            [row["category"] for row in response.json()], ["opening-balance", "salary"]
        )

    def test_missing_or_unknown_identity_is_unauthorized(self) -> None:
        self.assertEqual(self.client.get("/accounts").status_code, 401)
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "9999"}).status_code, 401)
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "abc"}).status_code, 401)

    def test_invalid_transactions_are_rejected(self) -> None:
        account = self._create_account()
        base = {
            "account_id": account["id"],
            "type": "EXPENSE",
            "amount": "5",
            "date": "2024-03-01T09:00:00",
            "category": "food",
        }

        zero = self.client.post("/transactions", json={**base, "amount": "0"}, headers=self.headers)
        extra = self.client.post("/transactions", json={**base, "user_id": 7}, headers=self.headers)
        no_interval = self.client.post(
            "/transactions", json={**base, "is_recurring": True}, headers=self.headers
        )
        missing = self.client.post(
            "/transactions", json={**base, "account_id": 9999}, headers=self.headers
        )

        self.assertEqual(zero.status_code, 400)
        self.assertEqual(extra.status_code, 422)
        self.assertEqual(no_interval.status_code, 400)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self._balance(account["id"]), Decimal("100.00"))

    def test_budget_round_trip(self) -> None:
        account = self._create_account()
        self._create_transaction(account["id"], date="2024-03-01T09:00:00")

        response = self.client.put("/budget", json={"amount": "500"}, headers=self.headers)
        self.assertEqual(response.status_code, 200)

        current = self.client.get(
            "/budget", params={"account_id": account["id"]}, headers=self.headers
        ).json()
        self.assertEqual(Decimal(current["budget"]["amount"]), Decimal("500"))

    def test_jobs_require_cron_secret(self) -> None:
        denied = self.client.post("/jobs/recurring")
        allowed = self.client.post("/jobs/recurring", headers={"x-cron-secret": "s3cret"})

        self.assertEqual(denied.status_code, 401)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["job"], "recurring-transactions")

    def test_recurring_job_materializes_due_transactions(self) -> None:
        account = self._create_account()
        self._create_transaction(
            account["id"], amount="9.99", is_recurring=True, recurring_interval="monthly"
        )

        response = self.client.post("/jobs/recurring", headers={"x-cron-secret": "s3cret"})

        self.assertEqual(response.json()["processed"], 1)
        self.assertEqual(self._balance(account["id"]), Decimal("80.02"))
        descriptions = [
            row["description"]
            for row in self.client.get(
                "/transactions", params={"is_recurring": "false"}, headers=self.headers
            ).json()
        ]
        self.assertCountEqual(descriptions, ["(Recurring)", "Opening balance"])

    def test_receipt_scan(self) -> None:
        response = self.client.post(
            "/receipts/scan",
            files={"file": ("receipt.jpg", b"\xff\xd8\xff", "image/jpeg")},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("23.5"))
        self.assertEqual(body["merchant_name"], "Cafe")
        self.assertEqual(body["category"], "food")

    def test_receipt_scan_rejects_non_receipts(self) -> None:
        self.app.state.receipt_client = ReceiptStub("{}")

        response = self.client.post(
            "/receipts/scan",
            files={"file": ("cat.png", b"\x89PNG", "image/png")},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_oversized_receipt_is_rejected_before_scanning(self) -> None:
        stub = self.app.state.receipt_client

        response = self.client.post(
            "/receipts/scan",
            files={"file": ("big.jpg", b"\xff" * (5 * 1024 * 1024 + 1), "image/jpeg")},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(stub.calls, 0)

    def test_opening_balance_is_booked_as_a_transaction(self) -> None:
        account = self._create_account(balance="-40")

        detail = self.client.get(f"/accounts/{account['id']}", headers=self.headers).json()

        self.assertEqual(Decimal(detail["balance"]), Decimal("-40"))
        self.assertEqual(
            [(row["type"], Decimal(row["amount"])) for row in detail["transactions"]],
            [("EXPENSE", Decimal("40"))],
        )

    def test_other_users_transaction_is_forbidden(self) -> None:
        mine = self._create_account()
        other = self.client.post(
            "/users/sync", json={"external_id": "user_xyz", "email": "bo@example.com"}
        ).json()
        other_headers = {"x-user-id": str(other["id"])}
        theirs = self.client.post(
            "/accounts", json={"name": "Joint"}, headers=other_headers
        ).json()
        txn = self.client.post(
            "/transactions",
            json={
                "account_id": theirs["id"],
                "type": "EXPENSE",
                "amount": "12",
                "date": "2024-03-01T09:00:00",
                "category": "food",
            },
            headers=other_headers,
        ).json()

        read = self.client.get(f"/transactions/{txn['id']}", headers=self.headers)
        delete = self.client.post(
            "/transactions/bulk-delete", json={"transaction_ids": [txn["id"]]}, headers=self.headers
        )
        unknown = self.client.get("/transactions/9999", headers=self.headers)

        self.assertEqual(read.status_code, 401)
        self.assertEqual(delete.status_code, 401)
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(self._balance(mine["id"]), Decimal("100.00"))


if __name__ == "__main__":
    unittest.main()
