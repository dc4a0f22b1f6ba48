import unittest
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import insert

from pennywise.accounts import create_account
from pennywise.db import create_db_engine, init_db, users
from pennywise.errors import ExternalServiceError
from pennywise.ledger import apply_create
from pennywise.notifications import LogSender
from pennywise.reports import (
    FALLBACK_INSIGHTS,
    MonthlyStats,
    generate_insights,
    get_monthly_stats,
    send_monthly_reports,
)
from pennywise.schemas import AccountPayload, TransactionPayload


class InsightsClient:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.prompts = []

    def generate_text(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.text


class InsightTests(unittest.TestCase):
    def test_parses_fenced_json_list(self) -> None:
        client = InsightsClient('```json\n["Spend less on food", "Save more", "Nice work"]\n```')

        insights = generate_insights(MonthlyStats(), "March", client)

        self.assertEqual(insights, ["Spend less on food", "Save more", "Nice work"])
        self.assertIn("March", client.prompts[0])

    def test_falls_back_on_service_failure(self) -> None:
        client = InsightsClient(error=ExternalServiceError("Gemini API unavailable"))

        self.assertEqual(generate_insights(MonthlyStats(), "March", client), FALLBACK_INSIGHTS)

    def test_falls_back_on_unexpected_shape(self) -> None:
        self.assertEqual(
            generate_insights(MonthlyStats(), "March", InsightsClient('{"tip": "save"}')),
            FALLBACK_INSIGHTS,
        )
        self.assertEqual(generate_insights(MonthlyStats(), "March", None), FALLBACK_INSIGHTS)


class MonthlyReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        with self.engine.begin() as conn:
            self.user_id = conn.execute(
                insert(users).values(email="ana@example.com", name="Ana").returning(users.c.id)
            ).scalar_one()
            conn.execute(insert(users).values(email="bo@example.com", name="Bo"))
        self.account_id = create_account(self.engine, self.user_id, AccountPayload(name="Checking"))["id"]
        for txn_type, amount, when, category in [
            ("INCOME", "3000", datetime(2024, 2, 1), "salary"),
            ("EXPENSE", "1200", datetime(2024, 2, 3), "housing"),
            ("EXPENSE", "80.25", datetime(2024, 2, 10), "food"),
            ("EXPENSE", "19.75", datetime(2024, 2, 29, 23, 30), "food"),
            ("EXPENSE", "500", datetime(2024, 3, 1), "travel"),
        ]:
            apply_create(
                self.engine,
                self.user_id,
                TransactionPayload(
                    account_id=self.account_id,
                    type=txn_type,
                    amount=Decimal(amount),
                    date=when,
                    category=category,
                ),
            )

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_monthly_stats_cover_one_calendar_month(self) -> None:
        stats = get_monthly_stats(self.engine, self.user_id, date(2024, 2, 1))

        self.assertEqual(stats.total_income, Decimal("3000"))
        self.assertEqual(stats.total_expenses, Decimal("1300"))
        self.assertEqual(stats.transaction_count, 4)
        self.assertEqual(stats.by_category, {"housing": Decimal("1200"), "food": Decimal("100")})

    def test_sends_previous_month_report_to_every_user(self) -> None:
        sender = LogSender()

        delivered = send_monthly_reports(self.engine, sender, None, today=date(2024, 3, 1))

        self.assertEqual(delivered, 2)
        self.assertEqual(
            [message.to_address for message in sender.sent], ["ana@example.com", "bo@example.com"]
        )
        self.assertEqual(sender.sent[0].subject, "Your Monthly Financial Report - February")
        self.assertIn("Total expenses: $1,300.00", sender.sent[0].body)
        self.assertIn("housing: $1,200.00", sender.sent[0].body)


if __name__ == "__main__":
    unittest.main()
